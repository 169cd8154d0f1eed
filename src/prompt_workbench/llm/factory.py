"""LLM client factory -- picks the client named in settings.

Adding a backend requires only a new entry in ``LLM_CLIENTS``.
"""

from __future__ import annotations

from collections.abc import Callable

import structlog

from prompt_workbench.config import Settings
from prompt_workbench.llm.client import LLMClient, StubLLMClient

logger = structlog.get_logger()

LLM_CLIENTS: dict[str, Callable[[], LLMClient]] = {
    "stub": StubLLMClient,
}


def create_llm_client(settings: Settings) -> LLMClient:
    """Instantiate the client configured by ``settings.llm_client``.

    Raises:
        ValueError: no client is registered under that name.
    """
    factory = LLM_CLIENTS.get(settings.llm_client)
    if factory is None:
        known = ", ".join(sorted(LLM_CLIENTS))
        msg = f"Unknown LLM client '{settings.llm_client}' (known: {known})"
        raise ValueError(msg)

    logger.info("llm_client_configured", client=settings.llm_client)
    return factory()
