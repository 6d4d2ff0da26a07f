from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
import logging
import time
import uvicorn

from . import __version__, config
from .api import (
    auth_router,
    hospitals_router,
    doctors_router,
    appointments_router,
    queues_router,
    chat_router,
    realtime_router,
)
from .database.connection import engine, Base

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
)
logger = logging.getLogger("carebridge")

# Create database tables
Base.metadata.create_all(bind=engine)

app = FastAPI(
    title="CareBridge API",
    description="Hospital appointments and patient queues",
    version=__version__
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code, elapsed_ms)
    return response

# ==================== ERROR HANDLERS ====================

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code >= 500:
        logger.error("HTTP %s: %s - %s", exc.status_code, exc.detail, request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content={"message": exc.detail},
        headers=getattr(exc, "headers", None)
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"message": "Invalid request", "errors": jsonable_encoder(exc.errors())}
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Global exception handler for unhandled exceptions"""
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    message = "Internal server error"
    if config.ENVIRONMENT == "development":
        message = f"{message}: {exc}"
    return JSONResponse(status_code=500, content={"message": message})

# Include routers
app.include_router(auth_router)
app.include_router(hospitals_router)
app.include_router(doctors_router)
app.include_router(appointments_router)
app.include_router(queues_router)
app.include_router(chat_router)
app.include_router(realtime_router)


@app.get("/")
async def root():
    return {
        "message": "CareBridge API",
        "status": "running",
        "version": __version__,
        "endpoints": {
            "auth": "/api/auth",
            "hospitals": "/api/hospitals",
            "doctors": "/api/doctors",
            "appointments": "/api/appointments",
            "queues": "/api/queues",
            "chat": "/api/chat",
            "realtime": "/ws",
            "docs": "/docs"
        }
    }


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


if __name__ == "__main__":
    uvicorn.run("carebridge.main:app", host="0.0.0.0", port=8000, reload=True)
