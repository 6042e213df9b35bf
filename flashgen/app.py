# flashgen/app.py
import time
import threading
from typing import Optional

# Load .env BEFORE any flashgen imports (they read env vars at import time)
from dotenv import load_dotenv
load_dotenv(override=True)

from fastapi import FastAPI, Request, Depends, HTTPException, Path
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response, PlainTextResponse
from sqlalchemy.orm import Session

import flashgen.generation_service as _generation
from flashgen.generation_service import (
    GenerationService,
    GenerationServiceError,
    CARD_SET_NOT_FOUND,
    RATE_LIMIT_EXCEEDED,
)
from flashgen.openrouter import OpenRouterGateway
from flashgen.openrouter_types import MissingCredentialError
from flashgen.schemas import (
    ChatCompletionResponse,
    GenerateFlashcardsCommand,
    GenerateFlashcardsResponse,
    GenerationDetails,
)
from flashgen import monitoring
from flashgen import auth as authmod
from flashgen import db as dbmod

app = FastAPI(title="Flashcard Generation API")

# Initialize DB tables on startup
dbmod.init_db()

API_KEY_HEADER = "x-api-key"
RATE_LIMIT_RETRY_AFTER = "60"

# one gateway per process; built on first use so the app imports without a key
_gateway: Optional[OpenRouterGateway] = None
_gateway_lock = threading.Lock()


def get_gateway() -> OpenRouterGateway:
    global _gateway
    with _gateway_lock:
        if _gateway is None:
            _gateway = OpenRouterGateway(ChatCompletionResponse)
        return _gateway


# ---------------------------------------------------------------------------
# Auth + rate-limit middleware (runs first on /api/* paths)
# ---------------------------------------------------------------------------
@app.middleware("http")
async def api_key_and_rate_limit_middleware(request: Request, call_next):
    path = request.url.path
    if not path.startswith("/api/"):
        return await call_next(request)

    api_key = request.headers.get(API_KEY_HEADER)
    if not authmod.is_key_allowed(api_key):
        return JSONResponse(status_code=401, content={"detail": "Missing or invalid API key"})

    # Rate limit check (synchronous limiter — no await needed)
    allowed, remaining = authmod.check_rate_limit(api_key or "")
    if not allowed:
        resp = JSONResponse(
            status_code=429,
            content={
                "status": "error",
                "error_code": "E_RATE_LIMIT",
                "message": "Rate limit exceeded"
            }
        )
        resp.headers["Retry-After"] = RATE_LIMIT_RETRY_AFTER
        return resp

    return await call_next(request)


# ---------------------------------------------------------------------------
# Metrics middleware
# ---------------------------------------------------------------------------
@app.middleware("http")
async def metrics_middleware(request: Request, call_next):
    start = time.time()
    endpoint = request.url.path
    method = request.method
    status = "500"
    try:
        response = await call_next(request)
        status = str(response.status_code)
        return response
    except Exception:
        monitoring.logger.exception("Unhandled exception in request", extra={"path": endpoint})
        raise
    finally:
        monitoring.observe_request(start, endpoint, method, status)


# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------
@app.exception_handler(RequestValidationError)
async def invalid_input_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "status": "error",
            "error_code": "INVALID_INPUT",
            "message": "Invalid input data",
            "details": {"issues": jsonable_encoder(exc.errors())},
        },
    )


@app.exception_handler(MissingCredentialError)
async def gateway_not_configured_handler(request: Request, exc: MissingCredentialError):
    monitoring.logger.error(f"Generation gateway not configured: {exc}")
    return JSONResponse(
        status_code=503,
        content={
            "status": "error",
            "error_code": "E_GATEWAY_NOT_CONFIGURED",
            "message": "AI generation is not available right now",
        },
    )


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------
def get_current_user(request: Request) -> str:
    user_id = authmod.resolve_user_id(request.headers.get(API_KEY_HEADER))
    if not user_id:
        raise HTTPException(status_code=401, detail="Missing or invalid API key")
    return user_id


def get_generation_service(db: Session = Depends(dbmod.get_db),
                           user_id: str = Depends(get_current_user)) -> GenerationService:
    gateway = None if _generation.MOCK_GENERATION else get_gateway()
    return GenerationService(db, user_id, gateway=gateway)


def _generation_error_response(error: GenerationServiceError) -> JSONResponse:
    status_code = 400
    headers = None
    if error.code == CARD_SET_NOT_FOUND:
        status_code = 404
    elif error.code == RATE_LIMIT_EXCEEDED:
        status_code = 429
        headers = {"Retry-After": RATE_LIMIT_RETRY_AFTER}
    return JSONResponse(
        status_code=status_code,
        headers=headers,
        content={
            "status": "error",
            "error_code": error.code,
            "message": error.message,
            "details": {"retryable": error.retryable},
        },
    )


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------
@app.post("/api/generations", status_code=201)
def create_generation(req: GenerateFlashcardsCommand,
                      service: GenerationService = Depends(get_generation_service)):
    """
    POST /api/generations
    Body: { "input_text": "... (1000-10000 chars)", "card_set_id": "<uuid>" (optional) }
    """
    monitoring.logger.info("Received /api/generations request", extra={
        "input_length": len(req.input_text),
        "card_set_id": str(req.card_set_id) if req.card_set_id else None,
    })
    try:
        result = service.generate_flashcards(req.input_text, card_set_id=req.card_set_id)
    except GenerationServiceError as e:
        return _generation_error_response(e)
    except Exception:
        monitoring.logger.exception("Unexpected error in /api/generations handler")
        return JSONResponse(
            status_code=500,
            content={
                "status": "error",
                "error_code": "E_INTERNAL",
                "message": "Internal server error",
            },
        )
    body = GenerateFlashcardsResponse(**result)
    return JSONResponse(status_code=201, content=jsonable_encoder(body))


@app.get("/api/generations/{generation_id}")
def get_generation(generation_id: str = Path(..., description="Generation ID to fetch"),
                   db: Session = Depends(dbmod.get_db),
                   user_id: str = Depends(get_current_user)):
    """
    GET /api/generations/{generation_id}
    Fetch the caller's stored generation record (metadata only).
    """
    rec = dbmod.get_generation_for_user(db, generation_id, user_id)
    if not rec:
        return JSONResponse(
            status_code=404,
            content={
                "status": "error",
                "error_code": "GENERATION_NOT_FOUND",
                "message": "Generation not found"
            }
        )
    return JSONResponse(status_code=200, content=jsonable_encoder(GenerationDetails(**rec)))


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/metrics")
async def metrics():
    if not monitoring.PROMETHEUS_ENABLED:
        return PlainTextResponse("Prometheus disabled", status_code=404)
    payload, content_type = monitoring.prometheus_metrics_response()
    return Response(content=payload, media_type=content_type)
