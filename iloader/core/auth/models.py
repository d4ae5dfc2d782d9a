"""
Data models for Apple ID authentication.

This module defines the authentication state machine states, the
handle returned to callers, and the transient in-memory session that
lives between starting a login and completing it.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class AuthState(Enum):
    """State of a Grand Slam authentication attempt."""

    IDLE = "idle"
    AWAITING_SERVER_CHALLENGE = "awaiting_server_challenge"
    AWAITING_SECOND_FACTOR = "awaiting_second_factor"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


@dataclass(frozen=True)
class SessionHandle:
    """
    Opaque reference to an authentication attempt.

    Attributes:
        session_id: Unique id of the attempt.
        identifier: Apple ID the attempt is for.
        state: State reached when the handle was issued.
        token: Session token when state is AUTHENTICATED.
    """

    session_id: str
    identifier: str
    state: AuthState
    token: Optional[bytes] = field(default=None, repr=False)

    @property
    def requires_second_factor(self) -> bool:
        """Whether a one-time code must be submitted to finish."""
        return self.state == AuthState.AWAITING_SECOND_FACTOR


@dataclass(frozen=True)
class TwoFactorRequired:
    """Login result telling the caller to collect a one-time code."""

    handle: SessionHandle

    @property
    def identifier(self) -> str:
        return self.handle.identifier


@dataclass
class AuthSession:
    """
    In-memory state of one login attempt. Never persisted.

    The password is kept in a bytearray so it can be overwritten when the
    session is discarded.
    """

    identifier: str
    password: bytearray = field(repr=False)
    anisette_server: str
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    state: AuthState = AuthState.IDLE
    srp_private_key: Optional[int] = field(default=None, repr=False)
    srp_public_key: Optional[bytes] = field(default=None, repr=False)
    derived_session_key: Optional[bytes] = field(default=None, repr=False)
    server_data: dict[str, Any] = field(default_factory=dict, repr=False)

    def handle(self, token: Optional[bytes] = None) -> SessionHandle:
        """Issue a handle reflecting the current state."""
        return SessionHandle(
            session_id=self.session_id,
            identifier=self.identifier,
            state=self.state,
            token=token,
        )

    def discard(self) -> None:
        """Zero the password and drop key material."""
        for i in range(len(self.password)):
            self.password[i] = 0
        self.password = bytearray()
        self.srp_private_key = None
        self.srp_public_key = None
        self.derived_session_key = None
        self.server_data = {}
