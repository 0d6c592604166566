"""Exception taxonomy for the spam triage pipeline.

Per-email and per-account failures are caught by the orchestrator and counted;
only unexpected exceptions escaping the run loop abort a run.
"""


class SpamGuardError(Exception):
    """Base class for all spamguard errors."""


class TransientBackendError(SpamGuardError):
    """Network or HTTP failure talking to an AI or mail backend."""


class MalformedResponseError(SpamGuardError):
    """AI response without valid JSON, or with an invalid score."""


class ProviderAuthError(SpamGuardError):
    """Mail credentials were rejected. Never retried."""


class SchemaMismatchError(SpamGuardError):
    """Embedding width or model differs from what the similarity store holds."""


class ConfigurationError(SpamGuardError):
    """A required setting (model, provider) is missing or invalid."""


class RunInProgressError(SpamGuardError):
    """A processing run is already active."""
