# tests/test_openrouter_gateway.py
"""
Tests for the OpenRouter gateway: payload shape, configuration merging, retry
policy, error normalization and the optional overall deadline.

The network is replaced by httpx.MockTransport and sleeping by a list recorder,
so no test touches the real API or actually waits.
"""
import json
import httpx
import pytest

from flashgen.openrouter import OpenRouterGateway
from flashgen.openrouter_types import (
    AuthenticationFailedError,
    GatewayTimeoutError,
    MissingCredentialError,
    OpenRouterAPIError,
    OpenRouterError,
    OpenRouterValidationError,
    RateLimitedError,
)
from flashgen.schemas import ChatCompletionResponse

API_URL = "https://openrouter.test/api/v1/chat/completions"
FLASHCARDS_CONTENT = '{"flashcards":[{"front":"Q","back":"A"}]}'


def completion_body(content=FLASHCARDS_CONTENT):
    return {
        "choices": [{"message": {"content": content, "role": "assistant"}, "index": 0, "finish_reason": "stop"}],
        "model": "openai/gpt-4o-mini",
        "created": 1700000000,
    }


class Spy:
    """Transport handler that replays scripted replies (or raises scripted errors) and records requests."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        resp = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(resp, Exception):
            raise resp
        return resp()


def make_gateway(spy, **kwargs):
    sleeps = []
    gw = OpenRouterGateway(
        ChatCompletionResponse,
        api_key=kwargs.pop("api_key", "test-key"),
        api_url=API_URL,
        http_client=httpx.Client(transport=httpx.MockTransport(spy)),
        sleep=sleeps.append,
        **kwargs,
    )
    return gw, sleeps


def reply(status, **kwargs):
    return lambda: httpx.Response(status, **kwargs)


def ok():
    return reply(200, json=completion_body())


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------
def test_missing_api_key_raises_before_any_network_call(monkeypatch):
    monkeypatch.delenv("OPENROUTER_API_KEY", raising=False)
    spy = Spy(ok())
    with pytest.raises(MissingCredentialError):
        OpenRouterGateway(ChatCompletionResponse, http_client=httpx.Client(transport=httpx.MockTransport(spy)))
    assert spy.requests == []


def test_blank_api_key_rejected():
    spy = Spy(ok())
    with pytest.raises(MissingCredentialError):
        make_gateway(spy, api_key="   ")
    assert spy.requests == []


def test_api_key_and_url_read_from_env(monkeypatch):
    monkeypatch.setenv("OPENROUTER_API_KEY", "env-key")
    monkeypatch.setenv("OPENROUTER_API_URL", "https://proxy.test/v1/chat")
    monkeypatch.setenv("OPENROUTER_MODEL", "anthropic/claude-3-haiku")
    gw = OpenRouterGateway(ChatCompletionResponse)
    try:
        assert gw.api_key == "env-key"
        assert gw.api_url == "https://proxy.test/v1/chat"
        assert gw.model_name == "anthropic/claude-3-haiku"
    finally:
        gw.close()


def test_default_url_when_env_unset(monkeypatch):
    monkeypatch.delenv("OPENROUTER_API_URL", raising=False)
    gw = OpenRouterGateway(ChatCompletionResponse, api_key="k")
    try:
        assert gw.api_url == "https://openrouter.ai/api/v1/chat/completions"
    finally:
        gw.close()


# ---------------------------------------------------------------------------
# Payload + configuration
# ---------------------------------------------------------------------------
def test_send_builds_payload_and_headers():
    spy = Spy(ok())
    gw, _ = make_gateway(spy)
    gw.configure(
        model_name="openai/gpt-4o",
        system_message="You write flashcards.",
        response_format={"type": "json_schema", "json_schema": {"name": "x"}},
    )
    resp = gw.send("some user text")

    assert isinstance(resp, ChatCompletionResponse)
    assert resp.choices[0].message.content == FLASHCARDS_CONTENT
    req = spy.requests[0]
    assert req.method == "POST"
    assert str(req.url) == API_URL
    assert req.headers["Authorization"] == "Bearer test-key"
    assert req.headers["Content-Type"] == "application/json"
    body = json.loads(req.content)
    assert body["messages"] == [
        {"role": "system", "content": "You write flashcards."},
        {"role": "user", "content": "some user text"},
    ]
    assert body["model"] == "openai/gpt-4o"
    assert body["temperature"] == 0.7
    assert body["max_tokens"] == 1000
    assert body["top_p"] == 1
    assert body["response_format"] == {"type": "json_schema", "json_schema": {"name": "x"}}


def test_response_format_omitted_and_system_message_empty_by_default():
    spy = Spy(ok())
    gw, _ = make_gateway(spy)
    gw.send("hello")
    body = json.loads(spy.requests[0].content)
    assert "response_format" not in body
    assert body["messages"][0] == {"role": "system", "content": ""}


def test_configure_merges_model_params():
    gw, _ = make_gateway(Spy(ok()))
    gw.configure(model_params={"max_tokens": 2000, "top_p": 0.9})
    cfg = gw.configure(model_params={"temperature": 0.2})
    assert cfg.model_params.temperature == 0.2
    assert cfg.model_params.max_tokens == 2000
    assert cfg.model_params.top_p == 0.9


def test_configure_merges_retry_config():
    gw, _ = make_gateway(Spy(ok()))
    cfg = gw.configure(retry_config={"max_attempts": 5})
    assert cfg.retry.max_attempts == 5
    assert cfg.retry.initial_delay_ms == 1000
    assert cfg.retry.max_delay_ms == 10000
    assert cfg.retry.retryable_status_codes == frozenset({408, 429, 500, 502, 503, 504})


def test_configure_is_idempotent():
    gw, _ = make_gateway(Spy(ok()))
    options = {
        "model_name": "m",
        "model_params": {"temperature": 0.1},
        "system_message": "sys",
        "retry_config": {"max_attempts": 4, "retryable_status_codes": [500]},
    }
    once = gw.configure(**options)
    twice = gw.configure(**options)
    assert once == twice
    assert gw.config == once


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------
@pytest.mark.parametrize("status", [408, 429, 500, 502, 503, 504])
def test_retryable_status_never_exceeds_max_attempts(status):
    spy = Spy(reply(status, text="upstream trouble"))
    gw, sleeps = make_gateway(spy)
    with pytest.raises(OpenRouterError):
        gw.send("x")
    assert len(spy.requests) == 3
    assert len(sleeps) == 2


@pytest.mark.parametrize("status", [500, 503])
def test_retryable_status_then_success(status):
    spy = Spy(reply(status), reply(status), ok())
    gw, sleeps = make_gateway(spy)
    resp = gw.send("x")
    assert resp.model == "openai/gpt-4o-mini"
    assert len(spy.requests) == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.parametrize("status", [400, 404, 422])
def test_non_retryable_status_single_attempt(status):
    spy = Spy(reply(status, text="bad request body"))
    gw, sleeps = make_gateway(spy)
    with pytest.raises(OpenRouterAPIError) as exc:
        gw.send("x")
    assert len(spy.requests) == 1
    assert sleeps == []
    assert exc.value.status == status
    assert exc.value.response_text == "bad request body"


def test_exhausted_retries_surface_final_api_error():
    spy = Spy(reply(502, text="bad gateway"))
    gw, _ = make_gateway(spy)
    with pytest.raises(OpenRouterAPIError) as exc:
        gw.send("x")
    assert exc.value.status == 502
    assert exc.value.status_text == "Bad Gateway"


def test_delay_sequence_follows_capped_exponential_backoff():
    spy = Spy(reply(503))
    gw, sleeps = make_gateway(spy)
    gw.configure(retry_config={"max_attempts": 7, "initial_delay_ms": 1000,
                               "max_delay_ms": 10000, "backoff_factor": 2})
    with pytest.raises(OpenRouterAPIError):
        gw.send("x")
    assert len(spy.requests) == 7
    expected = [min(1000 * 2 ** (n - 1), 10000) / 1000.0 for n in range(1, 7)]
    assert sleeps == pytest.approx(expected)
    assert sleeps == pytest.approx([1, 2, 4, 8, 10, 10])


def test_single_attempt_policy_never_sleeps():
    spy = Spy(reply(500))
    gw, sleeps = make_gateway(spy)
    gw.configure(retry_config={"max_attempts": 1})
    with pytest.raises(OpenRouterAPIError):
        gw.send("x")
    assert len(spy.requests) == 1
    assert sleeps == []


def test_retry_after_ignored_by_default():
    spy = Spy(reply(503, headers={"Retry-After": "7"}), ok())
    gw, sleeps = make_gateway(spy)
    gw.send("x")
    assert sleeps == [1.0]


def test_retry_after_honored_when_enabled_and_capped():
    spy = Spy(reply(503, headers={"Retry-After": "7"}),
              reply(503, headers={"Retry-After": "60"}),
              ok())
    gw, sleeps = make_gateway(spy)
    gw.configure(retry_config={"honor_retry_after": True})
    gw.send("x")
    assert sleeps == [7.0, 10.0]


@pytest.mark.parametrize("header", ["-1", "nan", "inf", "Wed, 21 Oct 2015 07:28:00 GMT"])
def test_unusable_retry_after_falls_back_to_backoff(header):
    spy = Spy(reply(503, headers={"Retry-After": header}), ok())
    gw, sleeps = make_gateway(spy)
    gw.configure(retry_config={"honor_retry_after": True})
    resp = gw.send("x")
    assert resp.choices[0].message.content == FLASHCARDS_CONTENT
    assert len(spy.requests) == 2
    assert sleeps == [1.0]


def test_client_timeout_is_retried_as_408():
    spy = Spy(httpx.ReadTimeout("slow"), ok())
    gw, sleeps = make_gateway(spy)
    resp = gw.send("x")
    assert isinstance(resp, ChatCompletionResponse)
    assert len(spy.requests) == 2
    assert sleeps == [1.0]


# ---------------------------------------------------------------------------
# Validation + normalization
# ---------------------------------------------------------------------------
def test_schema_violation_raises_validation_error_without_retry():
    spy = Spy(reply(200, json={"choices": "nope", "model": "m", "created": 1}))
    gw, sleeps = make_gateway(spy)
    with pytest.raises(OpenRouterValidationError) as exc:
        gw.send("x")
    assert len(spy.requests) == 1
    assert sleeps == []
    assert exc.value.validation_error is not None


def test_wrong_role_is_a_validation_error():
    body = completion_body()
    body["choices"][0]["message"]["role"] = "user"
    gw, _ = make_gateway(Spy(reply(200, json=body)))
    with pytest.raises(OpenRouterValidationError):
        gw.send("x")


def test_empty_body_object_rejected():
    gw, _ = make_gateway(Spy(reply(200, json={})))
    with pytest.raises(OpenRouterError) as exc:
        gw.send("x")
    assert "empty or not an object" in str(exc.value)


def test_rate_limit_normalized_after_retries():
    spy = Spy(reply(429, text="slow down"))
    gw, sleeps = make_gateway(spy)
    with pytest.raises(RateLimitedError) as exc:
        gw.send("x")
    assert len(spy.requests) == 3
    assert "Rate limit exceeded" in str(exc.value)
    assert isinstance(exc.value.__cause__, OpenRouterAPIError)


@pytest.mark.parametrize("status", [401, 403])
def test_auth_failures_normalized(status):
    spy = Spy(reply(status))
    gw, _ = make_gateway(spy)
    with pytest.raises(AuthenticationFailedError) as exc:
        gw.send("x")
    assert exc.value.status == status
    assert "Authentication failed" in str(exc.value)
    assert len(spy.requests) == 1


def test_transport_error_wrapped_as_generic_gateway_error():
    spy = Spy(httpx.ConnectError("connection refused"))
    gw, sleeps = make_gateway(spy)
    with pytest.raises(OpenRouterError) as exc:
        gw.send("x")
    assert type(exc.value) is OpenRouterError
    assert "connection refused" in str(exc.value)
    assert len(spy.requests) == 1
    assert sleeps == []


def test_non_json_success_body_wrapped_as_generic_gateway_error():
    gw, _ = make_gateway(Spy(reply(200, text="<html>oops</html>")))
    with pytest.raises(OpenRouterError) as exc:
        gw.send("x")
    assert type(exc.value) is OpenRouterError


# ---------------------------------------------------------------------------
# Deadline
# ---------------------------------------------------------------------------
def test_deadline_stops_retry_loop_before_overlong_sleep():
    now = {"t": 0.0}
    spy = Spy(reply(503))
    sleeps = []

    def fake_sleep(seconds):
        sleeps.append(seconds)
        now["t"] += seconds

    gw = OpenRouterGateway(
        ChatCompletionResponse,
        api_key="k",
        api_url=API_URL,
        http_client=httpx.Client(transport=httpx.MockTransport(spy)),
        sleep=fake_sleep,
        clock=lambda: now["t"],
    )
    gw.configure(retry_config={"max_attempts": 5})
    # 1s + 2s of back-off fit into 3.5s, the next 4s sleep does not
    with pytest.raises(GatewayTimeoutError):
        gw.send("x", timeout=3.5)
    assert sleeps == [1.0, 2.0]
    assert len(spy.requests) == 3
