"""Schemas for the similarity memory of past classifications."""

from datetime import datetime
from enum import StrEnum

from pydantic import BaseModel, Field


class UserValidation(StrEnum):
    """Human review state of a stored verdict."""

    UNSET = "unset"
    CONFIRMED_SPAM = "confirmed_spam"
    CONFIRMED_HAM = "confirmed_ham"


class SimilarityRecord(BaseModel):
    """A past classification plus the embedding of its content."""

    id: str
    email_id: str
    account_id: str
    subject: str
    sender: str = ""
    body: str = ""
    score: int = Field(ge=0, le=10)
    reasoning: str = ""
    is_spam: bool
    analyzed_at: datetime
    user_validation: UserValidation = UserValidation.UNSET
    vector: list[float] = Field(default_factory=list, repr=False)

    @property
    def user_agrees(self) -> bool | None:
        """True if the user confirmed the AI verdict, False if they corrected it."""
        if self.user_validation == UserValidation.UNSET:
            return None
        return (self.user_validation == UserValidation.CONFIRMED_SPAM) == self.is_spam


class SimilarEmail(SimilarityRecord):
    """A search hit. ``distance`` is cosine distance (0 = identical)."""

    distance: float = 0.0

    @property
    def similarity(self) -> float:
        return 1.0 - self.distance
