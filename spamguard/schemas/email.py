"""Schemas for mail accounts, messages and user rules.

Accounts and rules are owned outside the pipeline (JSON files edited by the
user); the pipeline only reads them.
"""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field

# --- Config ---


class ProviderType(StrEnum):
    """Mail provider backing an account."""

    IMAP = "imap"
    GMAIL = "gmail"
    OUTLOOK = "outlook"


class AccountStatus(StrEnum):
    """Account health as tracked by the host application."""

    ACTIVE = "active"
    TROUBLE = "trouble"
    DISABLED = "disabled"


class MailConnectionConfig(BaseModel):
    """Connection settings for a single mailbox."""

    host: str = ""
    port: int = 993
    ssl: bool = True
    username: str = ""
    password: str = ""
    inbox_folder: str = "INBOX"
    spam_folder: str = "Junk"
    is_gmail: bool = False


class Account(BaseModel):
    """A mail account the pipeline may process."""

    id: str
    name: str = ""
    provider: ProviderType = ProviderType.IMAP
    connection: MailConnectionConfig = Field(default_factory=MailConnectionConfig)
    status: AccountStatus = AccountStatus.ACTIVE

    @property
    def display_name(self) -> str:
        return self.name or self.connection.username or self.id


class Rule(BaseModel):
    """A user-defined spam rule, injected verbatim into the prompt."""

    id: str
    name: str = ""
    text: str
    enabled: bool = True
    email_accounts: list[str] | None = None  # None = applies to every account

    def applies_to(self, account_id: str) -> bool:
        if not self.enabled:
            return False
        return self.email_accounts is None or account_id in self.email_accounts


# --- Email data ---


class Email(BaseModel):
    """A fetched message. Transient: only its checksum is persisted."""

    id: str
    uid: str  # provider-native id, used for moves
    account_id: str = ""
    subject: str
    from_address: str = ""
    from_name: str = ""
    body: str = ""
    body_html: str = ""
    received_at: datetime

    @property
    def content(self) -> str:
        """Body as the classifier sees it: the text part, else the HTML part."""
        return self.body or self.body_html

    @property
    def sender(self) -> str:
        if self.from_name and self.from_address:
            return f"{self.from_name} <{self.from_address}>"
        return self.from_address or self.from_name or "Unknown Sender"


class ConnectionTestResult(BaseModel):
    """Outcome of a mail provider connection test."""

    success: bool
    error: str | None = None


# --- Files on disk ---


class AccountsFile(BaseModel):
    accounts: list[Account] = Field(default_factory=list)


class RulesFile(BaseModel):
    rules: list[Rule] = Field(default_factory=list)
