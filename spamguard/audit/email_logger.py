"""Append-only audit log of spam verdicts and mailbox moves.

Writes EmailAuditEntry records as JSON Lines (one JSON object per line).
"""

import logging
from datetime import UTC, datetime
from pathlib import Path

from spamguard.schemas.email import Email
from spamguard.schemas.processing import EmailAuditEntry, ProcessedEmailResult

logger = logging.getLogger(__name__)


class EmailAuditLog:
    """Append-only JSONL audit log for pipeline verdicts.

    Usage::

        audit = EmailAuditLog("/path/to/spam_audit.jsonl")
        audit.log_result(email, result)

        entries = audit.read_entries(since=some_datetime)
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)

    def log(self, entry: EmailAuditEntry) -> None:
        """Append a single audit entry to the log file."""
        with self._path.open("a") as f:
            f.write(entry.model_dump_json() + "\n")
        logger.debug(
            "Spam audit: %s email=%s subject=%s score=%d moved=%s",
            entry.action,
            entry.email_id,
            entry.subject,
            entry.score,
            entry.moved,
        )

    def log_result(self, email: Email, result: ProcessedEmailResult) -> EmailAuditEntry:
        """Log the outcome of one processed email.

        Ham is logged as ``classified``; spam as ``moved_to_spam`` or
        ``move_failed`` depending on whether the move succeeded.
        """
        if not result.is_spam:
            action = "classified"
        elif result.moved:
            action = "moved_to_spam"
        else:
            action = "move_failed"

        entry = EmailAuditEntry(
            timestamp=datetime.now(UTC),
            action=action,
            account_id=result.account_id,
            email_id=result.email_id,
            subject=email.subject,
            from_address=email.from_address,
            checksum=result.checksum,
            score=result.score,
            is_spam=result.is_spam,
            moved=result.moved,
        )
        self.log(entry)
        return entry

    def read_entries(
        self,
        *,
        since: datetime | None = None,
        limit: int | None = None,
    ) -> list[EmailAuditEntry]:
        """Read audit entries, optionally filtered by timestamp.

        Args:
            since: Only return entries after this timestamp.
            limit: Maximum number of entries to return (newest kept).

        Returns:
            List of EmailAuditEntry objects, oldest first.
        """
        if not self._path.exists():
            return []

        entries: list[EmailAuditEntry] = []
        with self._path.open() as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                entry = EmailAuditEntry.model_validate_json(line)
                if since and entry.timestamp <= since:
                    continue
                entries.append(entry)

        if limit is not None:
            entries = entries[-limit:]

        return entries
