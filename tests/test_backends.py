"""
Tests for provider backends and the model registry.
Provider wire traffic is faked with httpx.MockTransport.
Run with: pytest tests/test_backends.py
"""

import json

import httpx
import pytest

from chatline.backends.anthropic import AnthropicBackend
from chatline.backends.base import BackendResponse, ProviderDescriptor, ProviderKind, parse_sse_data
from chatline.backends.openai import OpenAIBackend
from chatline.backends.openrouter import OpenRouterBackend
from chatline.backends.registry import DEFAULT_MODELS, ModelRegistry, ModelSpec
from chatline.errors import ProviderError, UnknownModel


def sse(*payloads) -> bytes:
    """Build an SSE body from dict payloads (strings are sent verbatim)."""
    out = []
    for p in payloads:
        data = p if isinstance(p, str) else json.dumps(p)
        out.append(f"data: {data}\n\n")
    return "".join(out).encode()


def openai_chunk(text):
    return {"choices": [{"delta": {"content": text}, "index": 0}]}


def recording_transport(response: httpx.Response, seen: list):
    def handler(request: httpx.Request):
        seen.append(request)
        return response
    return httpx.MockTransport(handler)


async def collect(agen):
    return [x async for x in agen]


TURNS = [{"role": "user", "content": "Hi"}]


# ---------------------------------------------------------------------------
# SSE parsing
# ---------------------------------------------------------------------------

def test_parse_sse_data_line():
    assert parse_sse_data('data: {"a": 1}') == {"a": 1}


def test_parse_sse_skips_other_lines():
    assert parse_sse_data("") is None
    assert parse_sse_data(": keep-alive") is None
    assert parse_sse_data("event: message_start") is None
    assert parse_sse_data("data: [DONE]") is None
    assert parse_sse_data("data: not json") is None


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------

def test_openai_body_puts_system_first():
    b = OpenAIBackend(name="openai", url="https://api.openai.com/v1", api_key="k")
    body = b._build_body(TURNS, "gpt-4o", "Be brief.", stream=True)
    assert body["model"] == "gpt-4o"
    assert body["stream"] is True
    assert body["messages"] == [
        {"role": "system", "content": "Be brief."},
        {"role": "user", "content": "Hi"},
    ]


@pytest.mark.asyncio
async def test_openai_stream_yields_deltas_in_order():
    seen = []
    body = sse(
        {"choices": [{"delta": {"role": "assistant"}, "index": 0}]},
        openai_chunk("Hel"),
        openai_chunk("lo"),
        openai_chunk(""),
        "[DONE]",
    )
    b = OpenAIBackend(
        name="openai", url="https://api.openai.com/v1", api_key="sk-test",
        transport=recording_transport(httpx.Response(200, content=body), seen),
    )

    deltas = await collect(b.stream_text(TURNS, "gpt-4o"))

    assert deltas == ["Hel", "lo"]
    req = seen[0]
    assert str(req.url) == "https://api.openai.com/v1/chat/completions"
    assert req.headers["authorization"] == "Bearer sk-test"
    assert json.loads(req.content)["stream"] is True


@pytest.mark.asyncio
async def test_openai_stream_http_error():
    b = OpenAIBackend(
        name="openai", url="https://api.openai.com/v1", api_key="bad",
        transport=recording_transport(httpx.Response(401, json={"error": "bad key"}), []),
    )
    with pytest.raises(ProviderError, match="401"):
        await collect(b.stream_text(TURNS, "gpt-4o"))


@pytest.mark.asyncio
async def test_openai_stream_error_payload():
    body = sse(openai_chunk("par"), {"error": {"message": "overloaded"}})
    b = OpenAIBackend(
        name="openai", url="https://api.openai.com/v1", api_key="k",
        transport=recording_transport(httpx.Response(200, content=body), []),
    )
    received = []
    with pytest.raises(ProviderError, match="overloaded"):
        async for d in b.stream_text(TURNS, "gpt-4o"):
            received.append(d)
    assert received == ["par"]


@pytest.mark.asyncio
async def test_stream_requires_api_key():
    b = OpenAIBackend(name="openai", url="https://api.openai.com/v1")
    assert not b.configured
    with pytest.raises(ProviderError, match="No API key"):
        await collect(b.stream_text(TURNS, "gpt-4o"))


@pytest.mark.asyncio
async def test_stream_transport_failure():
    def handler(request):
        raise httpx.ConnectError("refused")

    b = OpenAIBackend(
        name="openai", url="https://api.openai.com/v1", api_key="k",
        transport=httpx.MockTransport(handler),
    )
    with pytest.raises(ProviderError, match="refused"):
        await collect(b.stream_text(TURNS, "gpt-4o"))


@pytest.mark.asyncio
async def test_stream_timeout():
    def handler(request):
        raise httpx.ReadTimeout("slow")

    b = OpenAIBackend(
        name="openai", url="https://api.openai.com/v1", api_key="k", timeout=1,
        transport=httpx.MockTransport(handler),
    )
    with pytest.raises(ProviderError, match="timeout"):
        await collect(b.stream_text(TURNS, "gpt-4o"))


@pytest.mark.asyncio
async def test_openai_complete_success():
    seen = []
    resp = httpx.Response(200, json={"choices": [{"message": {"content": "hello"}}]})
    b = OpenAIBackend(
        name="openai", url="https://api.openai.com/v1", api_key="k",
        transport=recording_transport(resp, seen),
    )

    result = await b.complete(TURNS, "gpt-4o-mini")

    assert result.ok
    assert result.text == "hello"
    assert result.cost_usd is None
    assert result.backend_name == "openai"
    assert json.loads(seen[0].content)["stream"] is False


@pytest.mark.asyncio
async def test_complete_http_error_is_not_raised():
    b = OpenAIBackend(
        name="openai", url="https://api.openai.com/v1", api_key="k",
        transport=recording_transport(httpx.Response(500, text="boom"), []),
    )
    result = await b.complete(TURNS, "gpt-4o")
    assert not result.ok
    assert result.status_code == 500
    assert "boom" in result.error


@pytest.mark.asyncio
async def test_complete_without_key():
    b = OpenAIBackend(name="openai", url="https://api.openai.com/v1")
    result = await b.complete(TURNS, "gpt-4o")
    assert not result.ok
    assert "No API key" in result.error


def test_backend_response_defaults():
    r = BackendResponse(ok=False, error="timeout")
    assert r.text == ""
    assert r.cost_usd is None


# ---------------------------------------------------------------------------
# Anthropic
# ---------------------------------------------------------------------------

def test_anthropic_headers():
    b = AnthropicBackend(name="anthropic", url="https://api.anthropic.com", api_key="ak")
    h = b._headers()
    assert h["x-api-key"] == "ak"
    assert h["anthropic-version"] == "2023-06-01"
    assert "Authorization" not in h


def test_anthropic_body_folds_system_turns():
    b = AnthropicBackend(name="anthropic", url="https://api.anthropic.com", api_key="ak", max_tokens=512)
    turns = [
        {"role": "system", "content": "Use metric units."},
        {"role": "user", "content": "How far?"},
    ]
    body = b._build_body(turns, "claude-3-5-haiku-20241022", "Be brief.", stream=True)
    assert body["system"] == "Be brief.\n\nUse metric units."
    assert body["messages"] == [{"role": "user", "content": "How far?"}]
    assert body["max_tokens"] == 512


def test_anthropic_body_without_system():
    b = AnthropicBackend(name="anthropic", url="https://api.anthropic.com", api_key="ak")
    assert "system" not in b._build_body(TURNS, "m", None, stream=False)


@pytest.mark.asyncio
async def test_anthropic_stream():
    seen = []
    body = (
        b"event: message_start\n"
        + sse({"type": "message_start", "message": {}})
        + b"event: content_block_delta\n"
        + sse({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Bon"}})
        + sse({"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": "{"}})
        + sse({"type": "content_block_delta", "delta": {"type": "text_delta", "text": "jour"}})
        + sse({"type": "message_stop"})
    )
    b = AnthropicBackend(
        name="anthropic", url="https://api.anthropic.com", api_key="ak",
        transport=recording_transport(httpx.Response(200, content=body), seen),
    )

    assert await collect(b.stream_text(TURNS, "claude-3-5-haiku-20241022")) == ["Bon", "jour"]
    assert str(seen[0].url) == "https://api.anthropic.com/v1/messages"


@pytest.mark.asyncio
async def test_anthropic_stream_error_event():
    body = sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
    b = AnthropicBackend(
        name="anthropic", url="https://api.anthropic.com", api_key="ak",
        transport=recording_transport(httpx.Response(200, content=body), []),
    )
    with pytest.raises(ProviderError, match="Overloaded"):
        await collect(b.stream_text(TURNS, "m"))


def test_anthropic_extract_text():
    b = AnthropicBackend(name="anthropic", url="https://api.anthropic.com", api_key="ak")
    data = {"content": [{"type": "text", "text": "A "}, {"type": "tool_use"}, {"type": "text", "text": "B"}]}
    assert b._extract_text(data) == "A B"


# ---------------------------------------------------------------------------
# OpenRouter
# ---------------------------------------------------------------------------

def test_openrouter_headers():
    b = OpenRouterBackend(name="openrouter", url="https://openrouter.ai/api/v1", api_key="or")
    h = b._headers()
    assert h["Authorization"] == "Bearer or"
    assert "HTTP-Referer" in h
    assert h["X-Title"] == "chatline"


def test_openrouter_cost_extraction():
    b = OpenRouterBackend(name="openrouter", url="https://openrouter.ai/api/v1", api_key="or")
    assert b._extract_cost({"cost_usd": "0.0015"}) == 0.0015
    assert b._extract_cost({"usage": {"cost": 0.002}}) == 0.002
    assert b._extract_cost({"usage": {}}) is None


@pytest.mark.asyncio
async def test_openrouter_passes_model_through():
    seen = []
    b = OpenRouterBackend(
        name="openrouter", url="https://openrouter.ai/api/v1", api_key="or",
        transport=recording_transport(httpx.Response(200, content=sse(openai_chunk("ok"))), seen),
    )
    await collect(b.stream_text(TURNS, "mistralai/mistral-large"))
    assert json.loads(seen[0].content)["model"] == "mistralai/mistral-large"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def make_registry(transport=None, keys=True, **kwargs):
    key = "k" if keys else ""
    backends = {
        ProviderKind.OPENAI: OpenAIBackend("openai", "https://api.openai.com/v1", key, transport=transport),
        ProviderKind.ANTHROPIC: AnthropicBackend("anthropic", "https://api.anthropic.com", key, transport=transport),
        ProviderKind.OPENROUTER: OpenRouterBackend("openrouter", "https://openrouter.ai/api/v1", key, transport=transport),
    }
    return ModelRegistry(backends, **kwargs)


def test_resolve_direct_vendor_a():
    d = make_registry().resolve("gpt-4o")
    assert d == ProviderDescriptor(kind=ProviderKind.OPENAI, model_name="gpt-4o", model_id="gpt-4o")


def test_resolve_direct_vendor_b_maps_concrete_name():
    d = make_registry().resolve("haiku-4-5")
    assert d.kind is ProviderKind.ANTHROPIC
    assert d.model_name == "claude-3-5-haiku-20241022"


def test_resolve_aggregator_passthrough():
    d = make_registry().resolve("anthropic/claude-3.5-sonnet")
    assert d.kind is ProviderKind.OPENROUTER
    assert d.model_name == "anthropic/claude-3.5-sonnet"


def test_resolve_unknown_model():
    with pytest.raises(UnknownModel) as exc:
        make_registry().resolve("gpt-2")
    assert exc.value.status_code == 400
    assert "gpt-2" in exc.value.reason


def test_list_models():
    models = make_registry().list_models()
    assert len(models) == len(DEFAULT_MODELS)
    gpt = next(m for m in models if m["id"] == "gpt-4o")
    assert gpt == {
        "id": "gpt-4o",
        "name": "GPT-4o",
        "provider": "openai",
        "description": gpt["description"],
    }


def test_default_model_falls_back_when_unknown():
    assert make_registry(default_model="not-a-model").default_model == DEFAULT_MODELS[0].id


def test_from_config_adds_extra_models():
    cfg = {
        "providers": {"openrouter": {"api_key": "or"}},
        "models": {
            "default": "haiku-4-5",
            "extra": [
                {"id": "qwen/qwen-2.5-72b-instruct", "name": "Qwen 2.5 72B", "provider": "openrouter"},
                {"id": "bogus", "provider": "nowhere"},
                {"name": "no id"},
            ],
        },
    }
    registry = ModelRegistry.from_config(cfg)

    assert registry.default_model == "haiku-4-5"
    d = registry.resolve("qwen/qwen-2.5-72b-instruct")
    assert d.kind is ProviderKind.OPENROUTER
    assert d.model_name == "qwen/qwen-2.5-72b-instruct"
    assert not registry.is_known("bogus")
    assert set(registry.unconfigured_providers()) == {"openai", "anthropic"}


def test_from_config_backend_settings():
    cfg = {"providers": {"anthropic": {"api_key": "ak", "max_tokens": 1024, "timeout": 30}}}
    registry = ModelRegistry.from_config(cfg)
    b = registry.backend_for(ProviderKind.ANTHROPIC)
    assert b.max_tokens == 1024
    assert b.timeout == 30
    assert b.url == "https://api.anthropic.com"


def test_backend_for_missing_kind():
    registry = ModelRegistry({}, models=[ModelSpec("x", "X", ProviderKind.OPENAI, "x")])
    with pytest.raises(ProviderError):
        registry.backend_for(ProviderKind.OPENAI)


@pytest.mark.asyncio
async def test_registry_generate_routes_to_backend():
    seen = []
    transport = recording_transport(
        httpx.Response(200, content=sse(openai_chunk("a"), openai_chunk("b"))), seen,
    )
    registry = make_registry(transport)

    out = await collect(registry.generate(registry.resolve("mistralai/mistral-large"), TURNS, "sys"))

    assert out == ["a", "b"]
    assert seen[0].url.host == "openrouter.ai"
    sent = json.loads(seen[0].content)
    assert sent["messages"][0] == {"role": "system", "content": "sys"}


@pytest.mark.asyncio
async def test_registry_generate_is_lazy():
    seen = []
    registry = make_registry(recording_transport(httpx.Response(200, content=sse()), seen))
    gen = registry.generate(registry.resolve("gpt-4o"), TURNS)
    assert seen == []
    await gen.aclose()
    assert seen == []


@pytest.mark.asyncio
async def test_registry_generate_close_closes_backend_stream():
    registry = make_registry()
    closed = []

    async def stream_text(turns, model, system=None):
        try:
            yield "a"
            yield "b"
        finally:
            closed.append(model)

    registry.backends[ProviderKind.OPENAI].stream_text = stream_text
    gen = registry.generate(registry.resolve("gpt-4o"), TURNS)
    assert await gen.__anext__() == "a"

    await gen.aclose()
    assert closed == ["gpt-4o"]


@pytest.mark.asyncio
async def test_registry_complete():
    resp = httpx.Response(200, json={"choices": [{"message": {"content": "Title"}}]})
    registry = make_registry(recording_transport(resp, []))
    assert await registry.complete(registry.resolve("gpt-4o-mini"), TURNS) == "Title"


@pytest.mark.asyncio
async def test_registry_complete_failure_raises():
    registry = make_registry(recording_transport(httpx.Response(503, text="down"), []))
    with pytest.raises(ProviderError, match="503"):
        await registry.complete(registry.resolve("gpt-4o-mini"), TURNS)
