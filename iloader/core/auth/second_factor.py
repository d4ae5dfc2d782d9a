"""
Second-factor completion for Grand Slam sessions.

Finishes a login that stopped in AWAITING_SECOND_FACTOR by submitting
the one-time code shown on a trusted device.
"""

from __future__ import annotations

import logging
from typing import Callable

from iloader.core.anisette import AnisetteProvider
from iloader.core.auth.gsa import (
    GSAClient,
    GSAResponse,
    build_client_data,
    extract_session_token,
)
from iloader.core.auth.models import AuthSession
from iloader.exceptions import SRPError, ServerError

logger = logging.getLogger(__name__)


class SecondFactorFlow:
    """
    Submits a one-time code for an in-progress session.

    Anisette headers are fetched again for the session's server since
    they expire independently of the login attempt.
    """

    def __init__(self, anisette: AnisetteProvider, gsa: GSAClient):
        self._anisette = anisette
        self._gsa = gsa

    def complete(
        self,
        session: AuthSession,
        code: str,
        reauthenticate: Callable[[AuthSession], GSAResponse],
    ) -> bytes:
        """
        Submit the code and return the session token.

        When Apple accepts the code without handing out a token, the SRP
        handshake is run once more with the session's credentials.

        Args:
            session: Session waiting for its second factor.
            code: One-time code entered by the user.
            reauthenticate: Runs a fresh handshake for the session.

        Returns:
            Session token bytes.

        Raises:
            InvalidCredentialsError: If Apple reports -20101.
            ServerError: If Apple rejects the code.
            SRPError: If no token can be obtained.
        """
        anisette = self._anisette.fetch(session.anisette_server)
        response = self._gsa.post(
            {
                "o": "complete",
                "cpd": build_client_data(anisette),
                "security_code": code.strip(),
            },
            anisette,
            stage="gsa-2fa",
        )

        if response.needs_second_factor:
            raise ServerError(response.error_code, "Verification code was not accepted")
        response.raise_for_error()

        token = extract_session_token(response, session)
        if token is not None:
            logger.info(f"Second factor accepted for {session.identifier}")
            return token

        logger.info("Code accepted without a token, authenticating again")
        response = reauthenticate(session)
        if response.needs_second_factor:
            raise SRPError("second factor still required after verification")
        response.raise_for_error()

        token = extract_session_token(response, session)
        if token is None:
            raise SRPError("no session token in response")
        return token
