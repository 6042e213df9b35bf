# flashgen/openrouter.py
"""
HTTP gateway to an OpenRouter-compatible chat-completion endpoint.

Configuration (env vars, read once when the gateway is constructed):
  OPENROUTER_API_KEY=...           (required; construction fails without it)
  OPENROUTER_API_URL=...           (default: https://openrouter.ai/api/v1/chat/completions)
  OPENROUTER_MODEL=...             (default: openai/gpt-4o-mini)
  OPENROUTER_TIMEOUT_SECONDS=30    (per-attempt HTTP timeout)

Usage:
  from flashgen.openrouter import OpenRouterGateway
  gateway = OpenRouterGateway(ChatCompletionResponse)
  gateway.configure(system_message="...", model_params={"temperature": 0.2})
  resp = gateway.send("user text", timeout=60)
"""

import os
import math
import time
import threading
from typing import Any, Callable, Dict, Optional, Type

import httpx
from pydantic import BaseModel, ValidationError

from flashgen import monitoring
from flashgen.openrouter_types import (
    DEFAULT_API_URL,
    DEFAULT_MODEL,
    AuthenticationFailedError,
    GatewayConfig,
    GatewayTimeoutError,
    MissingCredentialError,
    OpenRouterAPIError,
    OpenRouterError,
    OpenRouterValidationError,
    RateLimitedError,
    RetryConfig,
)


class OpenRouterGateway:
    """
    Validated, retrying client for one chat-completion endpoint.

    The effective GatewayConfig is immutable; configure() builds a new one and swaps
    the reference under a lock, so concurrent send() calls each work from a
    consistent snapshot.
    """

    def __init__(self, response_model: Type[BaseModel],
                 api_key: Optional[str] = None,
                 api_url: Optional[str] = None,
                 http_client: Optional[httpx.Client] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic,
                 request_timeout: Optional[float] = None):
        key = api_key if api_key is not None else os.getenv("OPENROUTER_API_KEY", "")
        self.api_key = (key or "").strip()
        if not self.api_key:
            raise MissingCredentialError(
                "OPENROUTER_API_KEY is required but not provided in environment variables"
            )

        self.api_url = api_url or os.getenv("OPENROUTER_API_URL", "").strip() or DEFAULT_API_URL
        if request_timeout is None:
            request_timeout = float(os.getenv("OPENROUTER_TIMEOUT_SECONDS", "30"))
        self.request_timeout = request_timeout

        self._response_model = response_model
        self._sleep = sleep
        self._clock = clock
        self._owns_client = http_client is None
        self._client = http_client or httpx.Client()
        self._config_lock = threading.Lock()
        self._config = GatewayConfig(
            model_name=os.getenv("OPENROUTER_MODEL", "").strip() or DEFAULT_MODEL
        )

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    @property
    def config(self) -> GatewayConfig:
        with self._config_lock:
            return self._config

    @property
    def model_name(self) -> str:
        return self.config.model_name

    def configure(self,
                  model_name: Optional[str] = None,
                  model_params: Optional[Dict[str, Any]] = None,
                  system_message: Optional[str] = None,
                  response_format: Optional[Dict[str, Any]] = None,
                  retry_config: Optional[Dict[str, Any]] = None) -> GatewayConfig:
        """
        Apply configuration options and return the new effective config.

        model_params and retry_config are merged key-by-key over the current values;
        model_name, system_message and response_format replace them. Values are not
        validated.
        """
        with self._config_lock:
            self._config = self._config.merged(
                model_name=model_name,
                model_params=model_params,
                system_message=system_message,
                response_format=response_format,
                retry_config=retry_config,
            )
            return self._config

    # ------------------------------------------------------------------
    # Request / response
    # ------------------------------------------------------------------
    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }

    def _prepare_request(self, config: GatewayConfig, user_message: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "messages": [
                {"role": "system", "content": config.system_message},
                {"role": "user", "content": user_message},
            ],
            "model": config.model_name,
        }
        payload.update(config.model_params.as_payload())
        if config.response_format:
            payload["response_format"] = config.response_format
        return payload

    def _validate_response(self, data: Any) -> BaseModel:
        if not data or not isinstance(data, dict):
            raise OpenRouterError("Response data is empty or not an object")
        try:
            return self._response_model.model_validate(data)
        except ValidationError as ve:
            raise OpenRouterValidationError(ve) from ve

    def _request_once(self, payload: Dict[str, Any], timeout: float) -> BaseModel:
        try:
            response = self._client.post(self.api_url, json=payload, headers=self._headers(), timeout=timeout)
        except httpx.TimeoutException as e:
            # surfaced as 408 so the retry policy covers client-side timeouts too
            monitoring.inc_gateway_attempt("timeout")
            raise OpenRouterAPIError(408, "Request Timeout", str(e)) from e

        monitoring.inc_gateway_attempt(str(response.status_code))
        if not response.is_success:
            raise OpenRouterAPIError(
                response.status_code,
                response.reason_phrase,
                response.text,
                retry_after=response.headers.get("retry-after"),
            )
        return self._validate_response(response.json())

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------
    def _remaining(self, deadline: Optional[float]) -> float:
        if deadline is None:
            return self.request_timeout
        remaining = deadline - self._clock()
        if remaining <= 0:
            raise GatewayTimeoutError("Deadline exceeded before the request could be sent")
        return min(self.request_timeout, remaining)

    @staticmethod
    def _retry_delay_ms(error: OpenRouterAPIError, attempt: int, retry: RetryConfig) -> float:
        if retry.honor_retry_after and error.retry_after:
            try:
                secs = float(error.retry_after)
            except ValueError:
                secs = None  # HTTP-date form; fall back to the computed back-off
            if secs is not None and math.isfinite(secs) and secs >= 0:
                return min(secs * 1000, retry.max_delay_ms)
        return retry.delay_ms(attempt)

    def _execute_with_retry(self, payload: Dict[str, Any], retry: RetryConfig,
                            deadline: Optional[float]) -> BaseModel:
        attempt = 1
        while True:
            try:
                return self._request_once(payload, self._remaining(deadline))
            except OpenRouterAPIError as e:
                if not (retry.is_retryable(e.status) and attempt < retry.max_attempts):
                    raise
                delay_ms = self._retry_delay_ms(e, attempt, retry)
                if deadline is not None and self._clock() + delay_ms / 1000.0 > deadline:
                    raise GatewayTimeoutError(
                        f"Deadline exceeded after {attempt} attempt(s); last status {e.status}"
                    ) from e
                monitoring.logger.warning(
                    f"Retry attempt {attempt}/{retry.max_attempts} after {delay_ms}ms for status {e.status}"
                )
                monitoring.inc_gateway_retry(str(e.status))
                self._sleep(delay_ms / 1000.0)
                attempt += 1

    # ------------------------------------------------------------------
    # Error normalization
    # ------------------------------------------------------------------
    @staticmethod
    def _normalize_error(error: Exception) -> Exception:
        monitoring.logger.error(f"OpenRouter gateway error: {error}")
        if isinstance(error, OpenRouterAPIError):
            if error.status == 429:
                return RateLimitedError()
            if error.status in (401, 403):
                return AuthenticationFailedError(error.status)
            return error
        if isinstance(error, OpenRouterError):
            return error
        return OpenRouterError(str(error) or "An unknown error occurred")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def send(self, user_message: str, timeout: Optional[float] = None) -> BaseModel:
        """
        Send user_message (after the configured system message) and return the
        response validated against the gateway's response model.

        timeout: optional overall budget in seconds covering every attempt and
        back-off sleep; exceeding it raises GatewayTimeoutError.
        """
        config = self.config
        deadline = self._clock() + timeout if timeout is not None else None
        try:
            payload = self._prepare_request(config, user_message)
            return self._execute_with_retry(payload, config.retry, deadline)
        except Exception as e:
            normalized = self._normalize_error(e)
            if normalized is e:
                raise
            raise normalized from e

    def close(self):
        if self._owns_client:
            self._client.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
