"""Records passed between pipeline stages."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Optional

CSV_COLUMNS = ("transfer_token", "target_user_id", "email", "alternate_emails")

# Separator the receiving system expects inside the alternate_emails field
ALTERNATE_EMAIL_DELIMITER = ":"


@dataclass(frozen=True)
class IdentityLinkRecord:
    """One legacy provider link (``legacy_auth.user_providers`` row).

    ``row_id`` is the link row id used for pagination, **not** a user id.
    ``user_id`` is filled in by :meth:`RecordStore.resolve_user_id` and stays
    None for links whose legacy account has no application user.
    """

    row_id: int
    legacy_user_ref: str
    provider_user_ref: str
    user_id: Optional[int] = None

    def with_user_id(self, user_id: Optional[int]) -> "IdentityLinkRecord":
        return replace(self, user_id=user_id)

    def log_context(self) -> dict:
        return {"row_id": self.row_id, "user_id": self.user_id}


@dataclass(frozen=True)
class MigrationSeed:
    """A ``transfer_migration`` row: the resumable checkpoint for one user."""

    user_id: int
    transfer_token: str


@dataclass(frozen=True)
class UserProfile:
    email: str
    target_user_id: Optional[str] = None


@dataclass(frozen=True)
class MigrationOutputRow:
    transfer_token: str
    target_user_id: str
    email: str
    alternate_emails: tuple[str, ...] = field(default_factory=tuple)

    def as_csv_row(self) -> dict[str, str]:
        return {
            "transfer_token": self.transfer_token,
            "target_user_id": self.target_user_id,
            "email": self.email,
            "alternate_emails": ALTERNATE_EMAIL_DELIMITER.join(self.alternate_emails),
        }
