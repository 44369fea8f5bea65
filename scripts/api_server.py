"""FastAPI Server for PocketMT
Provides REST API endpoints for translation and model cache management.

This module is ASCII-only to avoid encoding issues in various consoles.
Supports dev modes via environment variables:
- POCKETMT_DISABLE_STARTUP=1: skip loading artifacts (liveness OK, readiness 503)
- POCKETMT_ALLOWED_ORIGINS: comma-separated list of allowed CORS origins ("*" to disable protection)
- POCKETMT_BIND_HOST / POCKETMT_PORT: listening address
Model, cache and decoding settings are read by RuntimeSettings.from_env (POCKETMT_*).
"""

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator
import time
import logging
from typing import Optional, List
import os

from pocketmt.config import RuntimeSettings
from pocketmt.errors import DecodingCancelledError, NoTranslationError, PocketMTError, UnsupportedLanguageError
from pocketmt.translation_system import TranslationSystem
from pocketmt.utils import setup_logger


logger = setup_logger(name="pocketmt_api", level=logging.INFO)

DEFAULT_ALLOWED_ORIGINS = ["http://localhost", "http://127.0.0.1"]


def _parse_allowed_origins() -> List[str]:
    env_value = os.getenv("POCKETMT_ALLOWED_ORIGINS")
    if not env_value:
        return DEFAULT_ALLOWED_ORIGINS

    parsed = [origin.strip() for origin in env_value.split(",") if origin.strip()]
    if not parsed:
        logger.warning("POCKETMT_ALLOWED_ORIGINS was provided but empty; reverting to defaults.")
        return DEFAULT_ALLOWED_ORIGINS

    if parsed == ["*"]:
        logger.warning("CORS is unrestricted (POCKETMT_ALLOWED_ORIGINS='*'). Only use this in trusted networks.")
    return parsed


def _resolve_port() -> int:
    env_value = os.getenv("POCKETMT_PORT", "8000")
    try:
        return int(env_value)
    except ValueError:
        logger.warning("Invalid port '%s'. Falling back to 8000.", env_value)
        return 8000


app = FastAPI(
    title="PocketMT Translation API",
    description="Offline multilingual neural machine translation service",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

# CORS configuration - defaults to localhost-only for safety
allowed_origins = _parse_allowed_origins()

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

system: Optional[TranslationSystem] = None


class TranslationRequest(BaseModel):
    text: str = Field(..., description="Text to translate", min_length=1, max_length=5000)
    src_lang: str = Field("en", description="Source language code")
    tgt_lang: str = Field("ja", description="Target language code")
    max_length: Optional[int] = Field(None, description="Maximum output length in tokens", ge=2, le=512)
    num_beams: Optional[int] = Field(None, description="Number of beams", ge=1, le=10)

    @field_validator("src_lang", "tgt_lang")
    @classmethod
    def validate_lang(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Language code cannot be empty")
        return v


class TranslationResponse(BaseModel):
    translation: str
    src_lang: str
    tgt_lang: str
    inference_time_ms: float
    input_length: int
    output_length: int


class ArtifactResponse(BaseModel):
    name: str
    size: int
    timestamp: int
    sha256: str


class HealthResponse(BaseModel):
    status: str
    model_loaded: bool
    cache_backend: Optional[str] = None
    tokenizer: Optional[str] = None


class ErrorResponse(BaseModel):
    error: str
    detail: Optional[str] = None


@app.on_event("startup")
async def startup_event() -> None:
    global system
    logger.info("Starting PocketMT API server...")

    # Lightweight mode for tests/dev
    if os.getenv("POCKETMT_DISABLE_STARTUP") == "1":
        logger.info("Startup disabled by POCKETMT_DISABLE_STARTUP=1 (tests/dev mode)")
        system = None
        return

    try:
        settings = RuntimeSettings.from_env()
        system = TranslationSystem.from_settings(settings)
        await run_in_threadpool(system.load)
        logger.info("Model ready: %s", system.get_model_info())
        logger.info("PocketMT API server started successfully")
    except Exception as e:
        logger.error(f"Failed to start server: {e}")
        raise


@app.on_event("shutdown")
async def shutdown_event() -> None:
    logger.info("Shutting down PocketMT API server...")


def _require_system() -> TranslationSystem:
    if system is None:
        raise HTTPException(status_code=503, detail="Translation system not initialized")
    return system


@app.get("/", response_model=dict)
async def root() -> dict:
    return {
        "name": "PocketMT Translation API",
        "version": "0.1.0",
        "status": "running",
        "endpoints": {
            "translate": "/translate",
            "languages": "/languages",
            "cache": "/cache",
            "health": "/health",
            "docs": "/docs",
        },
    }


@app.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    return HealthResponse(
        status="healthy",
        model_loaded=system is not None and system.is_loaded(),
        cache_backend=system.settings.cache_backend if system is not None else None,
        tokenizer=system.settings.tokenizer_kind if system is not None else None,
    )


@app.get("/health/liveness")
async def liveness() -> dict:
    return {"status": "alive"}


@app.get("/health/readiness")
async def readiness() -> dict:
    if system is None or not system.is_loaded():
        raise HTTPException(status_code=503, detail="Service not ready")
    return {"status": "ready"}


@app.post("/translate", response_model=TranslationResponse)
async def translate(request: TranslationRequest) -> TranslationResponse:
    active = _require_system()

    start_time = time.time()
    try:
        translation = await run_in_threadpool(
            active.translate,
            request.text,
            request.src_lang,
            request.tgt_lang,
            num_beams=request.num_beams,
            max_length=request.max_length,
        )
    except UnsupportedLanguageError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (NoTranslationError, DecodingCancelledError) as e:
        raise HTTPException(status_code=422, detail=str(e))
    inference_time = (time.time() - start_time) * 1000.0

    return TranslationResponse(
        translation=translation,
        src_lang=request.src_lang,
        tgt_lang=request.tgt_lang,
        inference_time_ms=round(inference_time, 2),
        input_length=len(request.text),
        output_length=len(translation),
    )


@app.get("/languages", response_model=dict)
async def get_supported_languages() -> dict:
    active = _require_system()
    languages = active.supported_languages()
    return {"languages": languages, "count": len(languages)}


@app.get("/cache", response_model=List[ArtifactResponse])
async def list_cache() -> List[ArtifactResponse]:
    active = _require_system()
    infos = await run_in_threadpool(active.list_cached_artifacts)
    return [ArtifactResponse(**info.to_dict()) for info in infos]


@app.delete("/cache", response_model=dict)
async def clear_cache() -> dict:
    active = _require_system()
    await run_in_threadpool(active.clear_cache)
    return {"status": "cleared"}


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content=ErrorResponse(error=exc.detail).model_dump())


@app.exception_handler(PocketMTError)
async def pocketmt_exception_handler(request: Request, exc: PocketMTError):
    logger.error(f"Translation system error: {exc}")
    return JSONResponse(
        status_code=500,
        content=ErrorResponse(error="Translation system error", detail=str(exc)).model_dump(),
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception: {exc}")
    return JSONResponse(status_code=500, content=ErrorResponse(error="Internal server error").model_dump())


def main() -> None:
    import uvicorn

    # SECURITY: Default to localhost-only binding
    # Set POCKETMT_BIND_HOST=0.0.0.0 to expose externally (with proper firewall/VPN)
    host = os.getenv("POCKETMT_BIND_HOST", "127.0.0.1")
    port = _resolve_port()

    if host == "0.0.0.0":
        logger.warning(
            "SECURITY WARNING: Binding to 0.0.0.0 exposes API to all network interfaces. "
            "Ensure proper firewall rules, authentication, and rate limiting are configured."
        )

    logger.info(f"Starting API server on {host}:{port}")
    uvicorn.run("scripts.api_server:app", host=host, port=port, log_level="info", reload=False)


if __name__ == "__main__":
    main()
