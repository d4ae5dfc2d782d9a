"""
Data models for stored Apple ID accounts.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class Account:
    """
    An authenticated Apple ID.

    Accounts are replaced, never mutated, when the user signs in again.

    Attributes:
        identifier: Apple ID (email).
        session_token: Opaque GSA session token (myacinfo).
        created_at: When the session was stored.
    """

    identifier: str
    session_token: bytes = field(repr=False)
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict[str, Any]:
        """Display form. The token is not included."""
        return {
            "identifier": self.identifier,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class AccountRecord:
    """
    Persisted account metadata.

    Attributes:
        identifier: Apple ID (email).
        created_at: ISO timestamp of the stored session.
        key_teams: Teams whose signing key is held in the vault.
    """

    identifier: str
    created_at: str
    key_teams: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AccountRecord:
        """Create from dictionary."""
        return cls(
            identifier=data.get("identifier", ""),
            created_at=data.get("created_at", ""),
            key_teams=list(data.get("key_teams", [])),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "identifier": self.identifier,
            "created_at": self.created_at,
            "key_teams": list(self.key_teams),
        }

    @property
    def created(self) -> datetime:
        try:
            return datetime.fromisoformat(self.created_at)
        except ValueError:
            return datetime.fromtimestamp(0)
