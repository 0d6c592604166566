"""SQLite-backed checksum store marking emails that were already classified.

Each ``add`` commits immediately so that a crash right after an email is
processed never causes it to be classified again on the next run.
"""

import hashlib
import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)


def compute_checksum(subject: str, body: str) -> str:
    """SHA-256 hex digest of ``subject|body``."""
    return hashlib.sha256(f"{subject}|{body}".encode("utf-8")).hexdigest()


class DedupCache:
    """Persistent set of processed-email checksums.

    Usage::

        with DedupCache("/path/to/dedup.db") as cache:
            checksum = compute_checksum(email.subject, email.content)
            if not cache.has(checksum):
                ...
                cache.add(checksum)
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path))
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS processed_checksums (
                checksum     TEXT PRIMARY KEY,
                processed_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "DedupCache":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def has(self, checksum: str) -> bool:
        """Check if a checksum has already been recorded."""
        row = self._conn.execute(
            "SELECT 1 FROM processed_checksums WHERE checksum = ?", (checksum,)
        ).fetchone()
        return row is not None

    def add(self, checksum: str) -> None:
        """Record a checksum. Adding an existing checksum is a no-op."""
        self._conn.execute(
            "INSERT OR IGNORE INTO processed_checksums (checksum, processed_at)"
            " VALUES (?, ?)",
            (checksum, datetime.now(UTC).isoformat()),
        )
        self._conn.commit()

    def count(self) -> int:
        """Return the total number of recorded checksums."""
        row = self._conn.execute("SELECT COUNT(*) FROM processed_checksums").fetchone()
        return row[0]

    def clear(self) -> int:
        """Forget every checksum. Returns how many were removed."""
        cursor = self._conn.execute("DELETE FROM processed_checksums")
        self._conn.commit()
        logger.warning("Cleared %d processed-email checksum(s)", cursor.rowcount)
        return cursor.rowcount
