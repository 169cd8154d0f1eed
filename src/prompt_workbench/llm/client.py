"""LLM client interface used by run execution, plus an offline stub."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from prompt_workbench.llm.capabilities import profile_for
from prompt_workbench.llm.schemas import LLMRequest, LLMResponse

if TYPE_CHECKING:
    from prompt_workbench.storage.orm import ProviderCredential


class ProviderNotSupportedError(Exception):
    """The request names a provider without chat support."""

    def __init__(self, provider: str) -> None:
        self.provider = provider
        super().__init__(f"Provider '{provider}' does not support chat")


class LLMClient(Protocol):
    async def complete(
        self, request: LLMRequest, credential: ProviderCredential
    ) -> LLMResponse: ...


class StubLLMClient:
    """Echoes the prompt back; used in development and tests.

    Reports no token usage, like a provider that omits usage data.
    """

    async def complete(
        self, request: LLMRequest, credential: ProviderCredential
    ) -> LLMResponse:
        if not profile_for(request.provider).supports_chat:
            raise ProviderNotSupportedError(request.provider)

        joined = "\n".join(f"{m.role}: {m.content}" for m in request.messages)
        return LLMResponse(
            content=(
                f"Stub response from {request.provider} ({request.model}).\n"
                f"Input:\n{joined}"
            ),
            provider=request.provider,
            model_id=request.model,
        )
