"""Integration-test fixtures for deterministic backend and credential behavior."""

from __future__ import annotations

from collections.abc import Callable

import pytest

from mailsift.credentials import CredentialStore
from mailsift.llm.openrouter_client import OpenRouterChatClient


class InMemoryCredentialStore(CredentialStore):
    """Credential store double that never touches the OS keyring."""

    def __init__(self) -> None:
        self.api_key: str | None = None

    def is_available(self) -> bool:
        return True

    def get_api_key(self) -> str | None:
        return self.api_key

    def set_api_key(self, api_key: str) -> None:
        self.api_key = api_key.strip()

    def clear_api_key(self) -> bool:
        existed = self.api_key is not None
        self.api_key = None
        return existed


@pytest.fixture(autouse=True)
def _mock_openrouter_calls(
    monkeypatch: pytest.MonkeyPatch, newsletter_backend_response: Callable[[str], str]
) -> None:
    """Mock backend calls in integration tests to avoid network/key requirements."""

    def _mock_complete(self: OpenRouterChatClient, prompt: str) -> str:
        _ = self
        return newsletter_backend_response(prompt)

    monkeypatch.setattr(OpenRouterChatClient, "complete", _mock_complete)


@pytest.fixture(autouse=True)
def credential_store(monkeypatch: pytest.MonkeyPatch) -> InMemoryCredentialStore:
    """Replace the CLI's secure credential store with an in-memory one."""

    store = InMemoryCredentialStore()
    monkeypatch.setattr("mailsift.cli.create_credential_store", lambda: store)
    return store

