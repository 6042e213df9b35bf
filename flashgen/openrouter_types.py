# flashgen/openrouter_types.py
"""
Configuration value objects and the exception taxonomy for the OpenRouter gateway.

Every error raised by OpenRouterGateway.send is an OpenRouterError subclass:
  - MissingCredentialError      no API key at construction time (never retried)
  - OpenRouterAPIError          non-2xx response (retried per RetryConfig)
  - OpenRouterValidationError   2xx body failed response-model validation (never retried)
  - RateLimitedError            normalized 429 once retries are exhausted
  - AuthenticationFailedError   normalized 401 / 403
  - GatewayTimeoutError         overall deadline passed to send() ran out
"""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, Optional

DEFAULT_API_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_MODEL = "openai/gpt-4o-mini"
DEFAULT_RETRYABLE_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class OpenRouterError(Exception):
    """Base class for every gateway failure."""


class MissingCredentialError(OpenRouterError):
    pass


class OpenRouterAPIError(OpenRouterError):
    def __init__(self, status: int, status_text: str, response_text: str,
                 retry_after: Optional[str] = None):
        super().__init__(f"API request failed with status {status}: {status_text}")
        self.status = status
        self.status_text = status_text
        self.response_text = response_text
        self.retry_after = retry_after


class OpenRouterValidationError(OpenRouterError):
    def __init__(self, validation_error: Exception):
        super().__init__(f"Invalid response format: {validation_error}")
        self.validation_error = validation_error


class RateLimitedError(OpenRouterError):
    status = 429

    def __init__(self, message: str = "Rate limit exceeded. Please try again later."):
        super().__init__(message)


class AuthenticationFailedError(OpenRouterError):
    def __init__(self, status: int,
                 message: str = "Authentication failed. Please check your API key."):
        super().__init__(message)
        self.status = status


class GatewayTimeoutError(OpenRouterError):
    pass


@dataclass(frozen=True)
class ModelParams:
    temperature: float = 0.7
    max_tokens: int = 1000
    top_p: float = 1

    def as_payload(self) -> Dict[str, Any]:
        return {"temperature": self.temperature, "max_tokens": self.max_tokens, "top_p": self.top_p}


@dataclass(frozen=True)
class RetryConfig:
    max_attempts: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 10000
    backoff_factor: float = 2
    retryable_status_codes: FrozenSet[int] = DEFAULT_RETRYABLE_STATUS_CODES
    # when set, a numeric Retry-After header (seconds) replaces the computed delay
    honor_retry_after: bool = False

    def delay_ms(self, attempt: int) -> float:
        """Back-off before retrying after `attempt` (1-based) failed."""
        return min(self.initial_delay_ms * self.backoff_factor ** (attempt - 1), self.max_delay_ms)

    def is_retryable(self, status: int) -> bool:
        return status in self.retryable_status_codes


@dataclass(frozen=True)
class GatewayConfig:
    model_name: str = DEFAULT_MODEL
    model_params: ModelParams = field(default_factory=ModelParams)
    system_message: str = ""
    response_format: Optional[Dict[str, Any]] = None
    retry: RetryConfig = field(default_factory=RetryConfig)

    def merged(self,
               model_name: Optional[str] = None,
               model_params: Optional[Dict[str, Any]] = None,
               system_message: Optional[str] = None,
               response_format: Optional[Dict[str, Any]] = None,
               retry_config: Optional[Dict[str, Any]] = None) -> "GatewayConfig":
        """
        Return a new config with the given options applied.
        model_params and retry_config are shallow-merged over the current values;
        the remaining options replace them outright.
        """
        updates: Dict[str, Any] = {}
        if model_name is not None:
            updates["model_name"] = model_name
        if model_params is not None:
            updates["model_params"] = replace(self.model_params, **model_params)
        if system_message is not None:
            updates["system_message"] = system_message
        if response_format is not None:
            updates["response_format"] = response_format
        if retry_config is not None:
            retry_updates = dict(retry_config)
            if "retryable_status_codes" in retry_updates:
                retry_updates["retryable_status_codes"] = frozenset(retry_updates["retryable_status_codes"])
            updates["retry"] = replace(self.retry, **retry_updates)
        return replace(self, **updates) if updates else self
