# flashgen/generation_service.py
"""
Flashcard generation: turns pasted text into card drafts through the OpenRouter
gateway, records every successful generation in `generations` and every failure
in `generation_errors`.

Env vars:
  MOCK_GENERATION=true            build cards by sentence splitting instead of calling the API
  GENERATION_TIMEOUT_SECONDS=...  overall budget for one gateway call (all retries); unset = none
"""

import os
import re
import math
import json
import time
from typing import Any, Dict, List, Optional

from jsonschema import validate as jsonschema_validate, ValidationError as SchemaValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from flashgen import db as dbmod
from flashgen import monitoring
from flashgen.openrouter import OpenRouterGateway
from flashgen.openrouter_types import (
    AuthenticationFailedError,
    OpenRouterError,
    OpenRouterValidationError,
    RateLimitedError,
)
from flashgen.schemas import CardDraft, ChatCompletionResponse

MOCK_GENERATION = os.getenv("MOCK_GENERATION", "false").lower() in ("1", "true", "yes")


def parse_timeout_seconds(raw: Optional[str]) -> Optional[float]:
    """Positive finite seconds, or None (no deadline) for blank or unusable values."""
    raw = (raw or "").strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        value = None
    if value is None or not math.isfinite(value) or value <= 0:
        monitoring.logger.warning(f"Ignoring invalid GENERATION_TIMEOUT_SECONDS={raw!r}; no deadline applied")
        return None
    return value


GENERATION_TIMEOUT_SECONDS: Optional[float] = parse_timeout_seconds(os.getenv("GENERATION_TIMEOUT_SECONDS"))

MOCK_MODEL_NAME = "mock"
MOCK_MAX_CARDS = 10

# Error codes (mapped to HTTP statuses by the API layer)
GENERATION_FAILED = "GENERATION_FAILED"
VALIDATION_FAILED = "VALIDATION_FAILED"
SAVE_GENERATION_FAILED = "SAVE_GENERATION_FAILED"
API_ERROR = "API_ERROR"
RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
AUTHENTICATION_FAILED = "AUTHENTICATION_FAILED"
CARD_SET_NOT_FOUND = "CARD_SET_NOT_FOUND"

SYSTEM_PROMPT = (
    "You are an assistant that specializes in writing educational flashcards. "
    "Your task is to generate high-quality flashcards for studying the text the user provides. "
    "Each flashcard has a front (a question or a term) and a back (the answer or a definition). "
    "Keep the content concise, precise and easy to memorize. "
    "Avoid long or convoluted explanations. "
    "Always match the difficulty to the context and the subject of the text."
)

FLASHCARDS_JSON_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "properties": {
        "flashcards": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["front", "back"],
                "properties": {
                    "front": {"type": "string"},
                    "back": {"type": "string"},
                },
            },
        },
    },
    "required": ["flashcards"],
}

FLASHCARDS_RESPONSE_FORMAT: Dict[str, Any] = {
    "type": "json_schema",
    "json_schema": {"name": "flashcards", "schema": FLASHCARDS_JSON_SCHEMA},
}


class GenerationServiceError(Exception):
    def __init__(self, message: str, code: str,
                 input_text: Optional[str] = None,
                 cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.input_text = input_text
        self.cause = cause

    @property
    def retryable(self) -> bool:
        """Whether the caller may reasonably resubmit the same request later."""
        return self.code in (RATE_LIMIT_EXCEEDED, VALIDATION_FAILED, API_ERROR)


class FlashcardsParseError(ValueError):
    """Model content could not be turned into card drafts."""


def extract_cards(response: ChatCompletionResponse) -> List[CardDraft]:
    """Parse choices[0].message.content as {"flashcards": [{front, back}, ...]}."""
    if not response.choices:
        raise FlashcardsParseError("Model response contained no choices")
    content = response.choices[0].message.content
    try:
        payload = json.loads(content)
    except json.JSONDecodeError as e:
        raise FlashcardsParseError(f"Model content is not valid JSON: {e}") from e
    try:
        jsonschema_validate(instance=payload, schema=FLASHCARDS_JSON_SCHEMA)
    except SchemaValidationError as ve:
        raise FlashcardsParseError(f"Model content failed schema validation: {ve.message}") from ve
    return [CardDraft(front=c["front"], back=c["back"]) for c in payload["flashcards"]]


def mock_cards(input_text: str) -> List[CardDraft]:
    """
    Deterministic cards for demo/dev use: one card per sentence, front is the
    sentence with its last word blanked out, back is the full sentence.
    """
    sentences = [s.strip() for s in re.split(r"(?<=[.!?])\s+", input_text) if s.strip()]
    cards: List[CardDraft] = []
    for sentence in sentences:
        words = sentence.rstrip(".!?").split()
        if len(words) < 3:
            continue
        front = " ".join(words[:-1]) + " ____?"
        cards.append(CardDraft(front=front, back=sentence))
        if len(cards) >= MOCK_MAX_CARDS:
            break
    return cards


def classify_error(error: BaseException, input_text: Optional[str]) -> GenerationServiceError:
    if isinstance(error, GenerationServiceError):
        return error
    if isinstance(error, RateLimitedError):
        return GenerationServiceError("Too many requests. Please try again later.",
                                      RATE_LIMIT_EXCEEDED, input_text, error)
    if isinstance(error, AuthenticationFailedError):
        return GenerationServiceError("AI service authentication failed",
                                      AUTHENTICATION_FAILED, input_text, error)
    if isinstance(error, (OpenRouterValidationError, FlashcardsParseError)):
        return GenerationServiceError("Invalid response format",
                                      VALIDATION_FAILED, input_text, error)
    if isinstance(error, OpenRouterError):
        return GenerationServiceError("Failed to generate flashcards",
                                      API_ERROR, input_text, error)
    return GenerationServiceError("Failed to generate flashcards",
                                  GENERATION_FAILED, input_text, error)


class GenerationService:
    """
    Generate-and-persist flow for one user. Bind one instance per request (it holds
    the request's DB session); the gateway may be shared across instances.
    """

    def __init__(self, db: Session, user_id: str,
                 gateway: Optional[OpenRouterGateway] = None,
                 mock: Optional[bool] = None,
                 timeout: Optional[float] = None):
        self.db = db
        self.user_id = user_id
        self.mock = MOCK_GENERATION if mock is None else mock
        self.timeout = GENERATION_TIMEOUT_SECONDS if timeout is None else timeout
        self.gateway: Optional[OpenRouterGateway] = None
        if not self.mock:
            self.gateway = gateway or OpenRouterGateway(ChatCompletionResponse)
            self.gateway.configure(
                system_message=SYSTEM_PROMPT,
                response_format=FLASHCARDS_RESPONSE_FORMAT,
            )

    @property
    def model_name(self) -> str:
        return self.gateway.model_name if self.gateway else MOCK_MODEL_NAME

    def _ensure_card_set_access(self, card_set_id: str):
        if dbmod.get_card_set_for_user(self.db, card_set_id, self.user_id) is None:
            raise GenerationServiceError("Card set not found or access denied", CARD_SET_NOT_FOUND)

    def _generate_cards(self, input_text: str) -> List[CardDraft]:
        if self.mock:
            return mock_cards(input_text)
        response = self.gateway.send(input_text, timeout=self.timeout)
        return extract_cards(response)

    def _save_generation(self, input_text: str, duration: int, generated_count: int):
        try:
            return dbmod.insert_generation(self.db, {
                "input_text": input_text,
                "user_id": self.user_id,
                "model": self.model_name,
                "duration": duration,
                "generated_count": generated_count,
                "accepted_edited_count": None,
                "accepted_unedited_count": None,
            })
        except SQLAlchemyError as e:
            raise GenerationServiceError("Failed to save generation", SAVE_GENERATION_FAILED, input_text, e) from e

    def _log_generation_error(self, error: GenerationServiceError, input_text: Optional[str]):
        """Best-effort: a failure here must never mask the original error."""
        cause = error.cause
        try:
            dbmod.insert_generation_error(self.db, {
                "error_code": error.code,
                "error_message": error.message,
                "input_text": input_text or None,
                "model": self.model_name,
                "user_id": self.user_id,
                "cause": {"name": type(cause).__name__, "message": str(cause)} if cause else None,
            })
        except Exception:
            monitoring.logger.exception("Failed to record generation error",
                                        extra={"error_code": error.code})

    def generate_flashcards(self, input_text: str, card_set_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Returns {"generation_id", "cards", "created_at", "updated_at"}.
        Raises GenerationServiceError (after recording it) on any failure.
        No length checks here: the 1000..10000 character bound is enforced by the API layer.
        """
        start = time.time()
        try:
            if card_set_id is not None:
                self._ensure_card_set_access(str(card_set_id))

            cards = self._generate_cards(input_text)

            generation = self._save_generation(
                input_text,
                duration=int((time.time() - start) * 1000),
                generated_count=len(cards),
            )
        except Exception as error:
            generation_error = classify_error(error, input_text)
            self._log_generation_error(generation_error, input_text)
            monitoring.observe_generation(start, "fail", generation_error.code)
            monitoring.logger.warning("Flashcard generation failed", extra={
                "error_code": generation_error.code,
                "user_id": self.user_id,
            })
            if generation_error is error:
                raise
            raise generation_error from error

        monitoring.observe_generation(start, "success", cards=len(cards))
        monitoring.logger.info("Flashcards generated", extra={
            "generation_id": generation.id,
            "generated_count": len(cards),
            "duration_ms": generation.duration,
        })
        return {
            "generation_id": generation.id,
            "cards": cards,
            "created_at": generation.created_at,
            "updated_at": generation.updated_at,
        }
