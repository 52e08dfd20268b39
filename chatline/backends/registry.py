"""
Model registry: maps logical model ids to provider backends.

Every conversation stores a logical model id ("gpt-4o", "haiku-4-5",
"anthropic/claude-3.5-sonnet"). resolve() turns it into a ProviderDescriptor
(which backend, which concrete model name) before any network call is made;
generate() and complete() then run the call against the matching backend.

Built-in models can be extended from config.yaml:

    models:
      default: gpt-4o
      extra:
        - id: qwen/qwen-2.5-72b-instruct
          name: Qwen 2.5 72B
          provider: openrouter
"""

from __future__ import annotations

import logging
from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator

from chatline.backends.base import BaseBackend, ProviderDescriptor, ProviderKind
from chatline.backends.anthropic import AnthropicBackend
from chatline.backends.openai import OpenAIBackend
from chatline.backends.openrouter import OpenRouterBackend
from chatline.errors import ProviderError, UnknownModel

logger = logging.getLogger(__name__)

# Provider kind → backend class
PROVIDERS: dict[ProviderKind, type[BaseBackend]] = {
    ProviderKind.OPENAI: OpenAIBackend,
    ProviderKind.ANTHROPIC: AnthropicBackend,
    ProviderKind.OPENROUTER: OpenRouterBackend,
}

DEFAULT_URLS: dict[ProviderKind, str] = {
    ProviderKind.OPENAI: "https://api.openai.com/v1",
    ProviderKind.ANTHROPIC: "https://api.anthropic.com",
    ProviderKind.OPENROUTER: "https://openrouter.ai/api/v1",
}

DEFAULT_MODEL_ID = "gpt-4o"


@dataclass(frozen=True)
class ModelSpec:
    """One registry entry."""
    id: str
    name: str
    kind: ProviderKind
    model_name: str
    description: str = ""

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.kind.value,
            "description": self.description,
        }


DEFAULT_MODELS: list[ModelSpec] = [
    # Latest flagship models via OpenRouter
    ModelSpec("openai/gpt-5.1", "GPT-5.1", ProviderKind.OPENROUTER, "openai/gpt-5.1",
              "Latest generation OpenAI model"),
    ModelSpec("anthropic/claude-sonnet-4.5", "Claude Sonnet 4.5", ProviderKind.OPENROUTER,
              "anthropic/claude-sonnet-4.5", "Next generation Claude model"),
    ModelSpec("google/gemini-3-pro-preview", "Gemini 3 Pro (Preview)", ProviderKind.OPENROUTER,
              "google/gemini-3-pro-preview", "Google's latest Gemini preview model"),
    # Direct provider models
    ModelSpec("gpt-4o", "GPT-4o", ProviderKind.OPENAI, "gpt-4o",
              "Most capable OpenAI model with vision and advanced reasoning"),
    ModelSpec("gpt-4o-mini", "GPT-4o Mini", ProviderKind.OPENAI, "gpt-4o-mini",
              "Faster and more affordable version of GPT-4o"),
    ModelSpec("haiku-4-5", "Claude Haiku 4.5", ProviderKind.ANTHROPIC, "claude-3-5-haiku-20241022",
              "Fast and efficient Claude model for quick responses"),
    # More OpenRouter models
    ModelSpec("anthropic/claude-3.5-sonnet", "Claude 3.5 Sonnet", ProviderKind.OPENROUTER,
              "anthropic/claude-3.5-sonnet", "Most capable Claude model via OpenRouter"),
    ModelSpec("google/gemini-pro-1.5", "Gemini Pro 1.5", ProviderKind.OPENROUTER,
              "google/gemini-pro-1.5", "Google's latest multimodal model"),
    ModelSpec("meta-llama/llama-3.1-70b-instruct", "Llama 3.1 70B", ProviderKind.OPENROUTER,
              "meta-llama/llama-3.1-70b-instruct", "Meta's powerful open model"),
    ModelSpec("mistralai/mistral-large", "Mistral Large", ProviderKind.OPENROUTER,
              "mistralai/mistral-large", "Mistral's flagship model"),
]


def _spec_from_config(entry: dict) -> ModelSpec | None:
    """Build a ModelSpec from a models.extra entry."""
    model_id = entry.get("id", "")
    if not model_id:
        logger.warning("Model entry without id, skipping: %s", entry)
        return None
    try:
        kind = ProviderKind(entry.get("provider", ProviderKind.OPENROUTER.value))
    except ValueError:
        logger.warning("Unknown provider '%s' for model '%s', skipping", entry.get("provider"), model_id)
        return None
    return ModelSpec(
        id=model_id,
        name=entry.get("name", model_id),
        kind=kind,
        model_name=entry.get("model_name") or model_id,
        description=entry.get("description", ""),
    )


class ModelRegistry:
    """
    Resolves logical model ids and dispatches generation to backends.
    One backend instance per provider kind.
    """

    def __init__(
        self,
        backends: dict[ProviderKind, BaseBackend],
        models: list[ModelSpec] | None = None,
        default_model: str = DEFAULT_MODEL_ID,
    ):
        self.backends = backends
        self._models: dict[str, ModelSpec] = {}
        for spec in models if models is not None else DEFAULT_MODELS:
            self._models[spec.id] = spec
        self.default_model = default_model if default_model in self._models else next(iter(self._models), "")

        names = [f"{k.value}({b.name})" for k, b in self.backends.items()]
        logger.info("Model registry initialized: %d models, backends %s", len(self._models), ", ".join(names))

    @classmethod
    def from_config(cls, cfg: dict) -> "ModelRegistry":
        providers_cfg = cfg.get("providers", {}) or {}
        backends = {}
        for kind in ProviderKind:
            backends[kind] = cls._create_backend(kind, providers_cfg.get(kind.value, {}) or {})

        models_cfg = cfg.get("models", {}) or {}
        models = list(DEFAULT_MODELS)
        for entry in models_cfg.get("extra", []) or []:
            spec = _spec_from_config(entry)
            if spec:
                models.append(spec)

        return cls(
            backends=backends,
            models=models,
            default_model=models_cfg.get("default", DEFAULT_MODEL_ID),
        )

    @staticmethod
    def _create_backend(kind: ProviderKind, cfg: dict) -> BaseBackend:
        """Instantiate a backend from its providers.<kind> config block."""
        backend_cls = PROVIDERS[kind]
        kwargs = {
            "name": cfg.get("name", kind.value),
            "url": cfg.get("url") or DEFAULT_URLS[kind],
            "api_key": cfg.get("api_key", ""),
            "timeout": cfg.get("timeout", 60),
        }
        if kind is ProviderKind.ANTHROPIC:
            kwargs["max_tokens"] = cfg.get("max_tokens", 4096)
            if cfg.get("version"):
                kwargs["version"] = cfg["version"]
        return backend_cls(**kwargs)

    # ─ Lookup ────────────────────────────────────────────────────────────

    def get(self, model_id: str) -> ModelSpec | None:
        return self._models.get(model_id)

    def is_known(self, model_id: str) -> bool:
        return model_id in self._models

    def resolve(self, model_id: str) -> ProviderDescriptor:
        """Map a logical model id to a provider descriptor, or raise UnknownModel."""
        spec = self._models.get(model_id)
        if spec is None:
            raise UnknownModel(model_id)
        return ProviderDescriptor(kind=spec.kind, model_name=spec.model_name, model_id=spec.id)

    def backend_for(self, kind: ProviderKind) -> BaseBackend:
        backend = self.backends.get(kind)
        if backend is None:
            raise ProviderError(f"No backend configured for provider '{kind.value}'")
        return backend

    def list_models(self) -> list[dict]:
        return [spec.to_dict() for spec in self._models.values()]

    def unconfigured_providers(self) -> list[str]:
        """Provider kinds whose backend has no API key."""
        return [kind.value for kind, b in self.backends.items() if not b.configured]

    # ─ Generation ────────────────────────────────────────────────────────

    async def generate(
        self,
        descriptor: ProviderDescriptor,
        turns: list[dict],
        system: str | None = None,
    ) -> AsyncIterator[str]:
        """
        Stream text fragments for the given turns.
        Lazy: nothing goes over the network until the first fragment is requested.
        Single pass, not restartable. No retries; failures raise ProviderError.
        """
        backend = self.backend_for(descriptor.kind)
        logger.debug(
            "Streaming from '%s' model '%s' (%d turns)",
            backend.name, descriptor.model_name, len(turns),
        )
        try:
            async with aclosing(backend.stream_text(turns, descriptor.model_name, system)) as texts:
                async for text in texts:
                    yield text
        except ProviderError as e:
            logger.error("Provider '%s' failed for model '%s': %s", backend.name, descriptor.model_name, e)
            raise

    async def complete(
        self,
        descriptor: ProviderDescriptor,
        turns: list[dict],
        system: str | None = None,
    ) -> str:
        """Single non-streaming call. Returns the reply text or raises ProviderError."""
        backend = self.backend_for(descriptor.kind)
        response = await backend.complete(turns, descriptor.model_name, system)
        if not response.ok:
            raise ProviderError(f"{backend.name}: {response.error}")

        logger.debug(
            "Backend '%s' served model '%s' in %.0fms (cost=%s)",
            backend.name, descriptor.model_name, response.latency_ms, response.cost_usd,
        )
        return response.text
