"""Generic IMAP mail provider wrapping imap-tools.

imap-tools is synchronous; all public methods use asyncio.to_thread()
for non-blocking operation. Each provider call opens its own connection,
so the provider itself holds no state between calls.

Usage::

    provider = ImapMailProvider()
    emails = await provider.fetch_emails(account.connection, 7, account_id=account.id)
    await provider.move_to_spam_folder(account.connection, emails[0].uid)
"""

import asyncio
import imaplib
import logging
from datetime import UTC, date, datetime, timedelta
from email.utils import parseaddr

from imap_tools import AND, MailBox, MailboxLoginError, MailMessage
from imap_tools.errors import ImapToolsError

from spamguard.errors import ProviderAuthError, TransientBackendError
from spamguard.schemas.email import ConnectionTestResult, Email, MailConnectionConfig

logger = logging.getLogger(__name__)

# Socket-level and protocol-level failures that are worth retrying next run.
_TRANSIENT_ERRORS = (OSError, imaplib.IMAP4.error, ImapToolsError)


def _parse_message(msg: MailMessage, account_id: str) -> Email:
    """Convert an imap-tools MailMessage to an Email."""
    from_name, from_addr = parseaddr(msg.from_)
    message_ids = msg.headers.get("message-id", ())
    message_id = message_ids[0].strip() if message_ids else ""
    received = msg.date
    if received.tzinfo is None:
        received = received.replace(tzinfo=UTC)
    return Email(
        id=message_id or f"{account_id}:{msg.uid}",
        uid=msg.uid,
        account_id=account_id,
        subject=msg.subject or "(no subject)",
        from_address=from_addr or msg.from_,
        from_name=from_name,
        body=msg.text or "",
        body_html=msg.html or "",
        received_at=received,
    )


class ImapConnection:
    """Async context manager around a logged-in imap-tools MailBox.

    Usage::

        async with ImapConnection(config) as conn:
            mailbox = conn.mailbox
    """

    def __init__(self, config: MailConnectionConfig) -> None:
        self._config = config
        self._mailbox: MailBox | None = None

    async def __aenter__(self) -> "ImapConnection":
        self._mailbox = await asyncio.to_thread(self._connect)
        return self

    async def __aexit__(self, *exc: object) -> None:
        if self._mailbox:
            await asyncio.to_thread(self._disconnect)
            self._mailbox = None

    def _connect(self) -> MailBox:
        """Connect and login (sync, called via to_thread)."""
        if self._config.ssl:
            mb = MailBox(self._config.host, port=self._config.port)
        else:
            from imap_tools import MailBoxUnencrypted

            mb = MailBoxUnencrypted(self._config.host, port=self._config.port)

        try:
            mb.login(self._config.username, self._config.password)
        except MailboxLoginError as exc:
            logger.error("IMAP login failed for %s", self._config.username)
            raise ProviderAuthError(f"IMAP login rejected for {self._config.username}") from exc

        logger.info("Connected to %s as %s", self._config.host, self._config.username)
        return mb

    def _disconnect(self) -> None:
        """Logout and close (sync, called via to_thread)."""
        if self._mailbox:
            try:
                self._mailbox.logout()
            except Exception:
                logger.debug("Error during IMAP logout", exc_info=True)

    @property
    def mailbox(self) -> MailBox:
        if self._mailbox is None:
            raise RuntimeError("ImapConnection is not open. Use 'async with' context.")
        return self._mailbox


class ImapMailProvider:
    """Mail capability backed by a plain IMAP server."""

    async def fetch_emails(
        self,
        config: MailConnectionConfig,
        max_age_days: int,
        *,
        account_id: str = "",
    ) -> list[Email]:
        """Fetch messages received within the last ``max_age_days`` days.

        Messages are fetched without marking them seen, newest first.

        Raises:
            ProviderAuthError: If the server rejects the credentials.
            TransientBackendError: On connection or protocol failures.
        """
        since: date = (datetime.now(UTC) - timedelta(days=max_age_days)).date()

        try:
            async with ImapConnection(config) as conn:

                def _fetch() -> list[Email]:
                    conn.mailbox.folder.set(config.inbox_folder)
                    msgs = conn.mailbox.fetch(
                        AND(date_gte=since),
                        mark_seen=False,
                        reverse=True,
                    )
                    return [_parse_message(m, account_id) for m in msgs]

                emails = await asyncio.to_thread(_fetch)
        except _TRANSIENT_ERRORS as exc:
            raise TransientBackendError(f"IMAP fetch failed for {config.username}: {exc}") from exc

        logger.info(
            "Fetched %d email(s) from %s/%s since %s",
            len(emails),
            config.username,
            config.inbox_folder,
            since.isoformat(),
        )
        return emails

    async def move_to_spam_folder(self, config: MailConnectionConfig, uid: str) -> None:
        """Move one message to the configured spam folder.

        Uses COPY+DELETE for Gmail accounts (Gmail doesn't support standard
        MOVE reliably).
        """
        try:
            async with ImapConnection(config) as conn:

                def _move() -> None:
                    conn.mailbox.folder.set(config.inbox_folder)
                    if config.is_gmail:
                        conn.mailbox.copy([uid], config.spam_folder)
                        conn.mailbox.delete([uid])
                    else:
                        conn.mailbox.move([uid], config.spam_folder)

                await asyncio.to_thread(_move)
        except _TRANSIENT_ERRORS as exc:
            raise TransientBackendError(
                f"IMAP move of {uid} to {config.spam_folder} failed: {exc}"
            ) from exc

        logger.info("Moved email %s to %s for %s", uid, config.spam_folder, config.username)

    async def test_connection(self, config: MailConnectionConfig) -> ConnectionTestResult:
        """Log in, check the spam folder exists, and log out."""
        try:
            async with ImapConnection(config) as conn:

                def _folders() -> list[str]:
                    return [f.name for f in conn.mailbox.folder.list()]

                folders = await asyncio.to_thread(_folders)
        except ProviderAuthError as exc:
            return ConnectionTestResult(success=False, error=str(exc))
        except _TRANSIENT_ERRORS as exc:
            return ConnectionTestResult(success=False, error=f"Connection failed: {exc}")

        if config.spam_folder not in folders:
            return ConnectionTestResult(
                success=False,
                error=f"Spam folder {config.spam_folder!r} not found on server",
            )
        return ConnectionTestResult(success=True)
