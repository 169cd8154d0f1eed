"""LLM provider capabilities and client interface."""

from prompt_workbench.llm.capabilities import (
    PROVIDER_PROFILES,
    ProviderName,
    ProviderProfile,
    profile_for,
)
from prompt_workbench.llm.client import (
    LLMClient,
    ProviderNotSupportedError,
    StubLLMClient,
)
from prompt_workbench.llm.schemas import LLMMessage, LLMRequest, LLMResponse

__all__ = [
    "PROVIDER_PROFILES",
    "LLMClient",
    "LLMMessage",
    "LLMRequest",
    "LLMResponse",
    "ProviderName",
    "ProviderNotSupportedError",
    "ProviderProfile",
    "StubLLMClient",
    "profile_for",
]
