"""Static capability profiles of the supported LLM providers.

PROVIDER_PROFILES maps every :class:`ProviderName` to its profile. To add
a provider:

1. Add a member to ProviderName
2. Subclass ProviderProfile below
3. Add entry to PROVIDER_PROFILES

Names outside the enum resolve to :data:`UNSUPPORTED_PROFILE`.
"""

from __future__ import annotations

import abc
from enum import StrEnum


class ProviderName(StrEnum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    OPENROUTER = "openrouter"


class ProviderProfile(abc.ABC):
    """What the application can do with a provider's credentials."""

    name: str = ""

    @property
    @abc.abstractmethod
    def supports_chat(self) -> bool: ...

    @property
    @abc.abstractmethod
    def supports_model_listing(self) -> bool: ...

    @property
    def default_models(self) -> tuple[str, ...]:
        """Models offered before a live model listing is fetched."""
        return ()

    def as_dict(self) -> dict[str, bool]:
        return {
            "supports_chat": self.supports_chat,
            "supports_model_listing": self.supports_model_listing,
        }


class _ChatProviderProfile(ProviderProfile):
    @property
    def supports_chat(self) -> bool:
        return True

    @property
    def supports_model_listing(self) -> bool:
        return True


class OpenAIProfile(_ChatProviderProfile):
    name = ProviderName.OPENAI

    @property
    def default_models(self) -> tuple[str, ...]:
        return ("gpt-4.1", "gpt-4.1-mini", "gpt-4o", "gpt-4o-mini")


class AnthropicProfile(_ChatProviderProfile):
    name = ProviderName.ANTHROPIC

    @property
    def default_models(self) -> tuple[str, ...]:
        return (
            "claude-3-5-sonnet-20240620",
            "claude-3-opus-20240229",
            "claude-3-haiku-20240307",
        )


class GoogleProfile(_ChatProviderProfile):
    name = ProviderName.GOOGLE

    @property
    def default_models(self) -> tuple[str, ...]:
        return ("gemini-1.5-pro", "gemini-1.5-flash")


class OpenRouterProfile(_ChatProviderProfile):
    """Model catalogue is per account, so no static defaults."""

    name = ProviderName.OPENROUTER


class UnsupportedProfile(ProviderProfile):
    name = "unsupported"

    @property
    def supports_chat(self) -> bool:
        return False

    @property
    def supports_model_listing(self) -> bool:
        return False


UNSUPPORTED_PROFILE = UnsupportedProfile()

PROVIDER_PROFILES: dict[ProviderName, ProviderProfile] = {
    ProviderName.OPENAI: OpenAIProfile(),
    ProviderName.ANTHROPIC: AnthropicProfile(),
    ProviderName.GOOGLE: GoogleProfile(),
    ProviderName.OPENROUTER: OpenRouterProfile(),
}


def profile_for(provider: str) -> ProviderProfile:
    """Profile for a provider name; unknown names are unsupported."""
    try:
        return PROVIDER_PROFILES[ProviderName(provider)]
    except ValueError:
        return UNSUPPORTED_PROFILE


def all_capabilities() -> dict[str, dict[str, bool]]:
    return {str(name): profile.as_dict() for name, profile in PROVIDER_PROFILES.items()}
