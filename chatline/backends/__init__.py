"""
Provider backends for chatline.
One backend per provider kind (OpenAI, Anthropic, OpenRouter) behind a
model registry that resolves logical model ids.
"""
from chatline.backends.base import BaseBackend, BackendResponse, ProviderDescriptor, ProviderKind
from chatline.backends.anthropic import AnthropicBackend
from chatline.backends.openai import OpenAIBackend
from chatline.backends.openrouter import OpenRouterBackend
from chatline.backends.registry import ModelRegistry, ModelSpec

__all__ = [
    "BaseBackend",
    "BackendResponse",
    "ProviderDescriptor",
    "ProviderKind",
    "AnthropicBackend",
    "OpenAIBackend",
    "OpenRouterBackend",
    "ModelRegistry",
    "ModelSpec",
]
