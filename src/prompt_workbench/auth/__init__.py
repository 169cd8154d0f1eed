"""API key management."""

from prompt_workbench.auth.keys import generate_api_key, hash_api_key

__all__ = ["generate_api_key", "hash_api_key"]
