"""Capability contracts the pipeline depends on.

Concrete clients (Ollama, OpenRouter, IMAP) satisfy these structurally; tests
substitute ``AsyncMock`` objects.
"""

from typing import Protocol

from spamguard.schemas.email import ConnectionTestResult, Email, MailConnectionConfig


class AIBackend(Protocol):
    """Chat + embedding backend.

    Implementations raise ``TransientBackendError`` on network/HTTP failures.
    """

    async def send_message(self, prompt: str, model: str) -> str: ...

    async def list_models(self) -> list[str]: ...

    async def list_embedding_models(self) -> list[str]: ...

    async def generate_embedding(self, text: str, model: str) -> list[float]: ...

    async def context_length(self, model: str) -> int | None: ...

    async def test_connection(self) -> None: ...


class MailProvider(Protocol):
    """Fetch/move operations for one kind of mailbox.

    Implementations raise ``ProviderAuthError`` when credentials are rejected
    and ``TransientBackendError`` for other connection failures.
    """

    async def fetch_emails(
        self,
        config: MailConnectionConfig,
        max_age_days: int,
        *,
        account_id: str = "",
    ) -> list[Email]: ...

    async def move_to_spam_folder(self, config: MailConnectionConfig, uid: str) -> None: ...

    async def test_connection(self, config: MailConnectionConfig) -> ConnectionTestResult: ...
