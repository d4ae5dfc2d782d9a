"""
Apple ID authentication.

Example:
    from iloader.core.anisette import AnisetteProvider
    from iloader.core.auth import SRPAuthenticator

    authenticator = SRPAuthenticator(AnisetteProvider())
    handle = authenticator.begin("user@example.com", "hunter2", "ani.sidestore.io")
    if handle.requires_second_factor:
        token = authenticator.complete_second_factor(handle, "123456")
"""

from iloader.core.auth.authenticator import SRPAuthenticator
from iloader.core.auth.gsa import GSAClient, GSAResponse
from iloader.core.auth.models import (
    AuthSession,
    AuthState,
    SessionHandle,
    TwoFactorRequired,
)
from iloader.core.auth.second_factor import SecondFactorFlow

__all__ = [
    "AuthSession",
    "AuthState",
    "GSAClient",
    "GSAResponse",
    "SecondFactorFlow",
    "SessionHandle",
    "SRPAuthenticator",
    "TwoFactorRequired",
]
