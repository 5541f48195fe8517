# main.py - Kanbanly workspace API
import os
import time
import uuid
import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv

load_dotenv()

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from database import close_db, get_db_session, init_db
from email_service import get_email_service
from routers import boards, invitations, workspaces
from telemetry import setup_telemetry

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s %(message)s",
)
logger = logging.getLogger("kanbanly")

VERSION = "1.0.0"
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "http://localhost:5173").split(",") if o.strip()]


def _startup_warnings():
    """Configuration that degrades the service without stopping it"""
    warnings = []
    if len(os.getenv("JWT_SECRET_KEY", "")) < 32:
        warnings.append("JWT_SECRET_KEY is missing or shorter than 32 chars; tokens won't survive a restart")
    if not get_email_service().configured:
        warnings.append("SMTP_HOST is not set; every invitation email will land in failed_emails")
    return warnings


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    for warning in _startup_warnings():
        logger.warning(warning)
    setup_telemetry(app)
    logger.info(f"Kanbanly API v{VERSION} ready")
    yield
    await close_db()


app = FastAPI(
    title="Kanbanly",
    description="Collaborative workspaces, invitations and boards",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
)


@app.middleware("http")
async def request_id_middleware(request: Request, call_next):
    request.state.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
    started = time.perf_counter()
    response = await call_next(request)
    response.headers["X-Request-ID"] = request.state.request_id
    logger.debug(
        f"{request.method} {request.url.path} -> {response.status_code} "
        f"in {time.perf_counter() - started:.3f}s"
    )
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    # ctx may hold the raw ValueError, which is not JSON serialisable
    errors = [
        {"type": err.get("type"), "loc": list(err.get("loc", ())), "msg": err.get("msg")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content=jsonable_encoder({"detail": errors, "request_id": getattr(request.state, "request_id", None)}),
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error", "request_id": getattr(request.state, "request_id", None)},
    )


app.include_router(workspaces.router)
app.include_router(invitations.router)
app.include_router(boards.router)


@app.get("/health")
async def health_check(db: AsyncSession = Depends(get_db_session)):
    try:
        await db.execute(text("SELECT 1"))
        database = "connected"
    except Exception as e:
        logger.warning(f"Health check could not reach the database: {e}")
        database = "unreachable"

    return {
        "status": "healthy" if database == "connected" else "degraded",
        "version": VERSION,
        "database": database,
        "email": "configured" if get_email_service().configured else "disabled",
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
