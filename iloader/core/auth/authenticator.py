"""
Apple ID authentication via Grand Slam (GSA) and SRP-6a.

The authenticator runs the SRP handshake for a login attempt and tracks
the attempt through its states:

    IDLE -> AWAITING_SERVER_CHALLENGE -> AUTHENTICATED
                                      -> AWAITING_SECOND_FACTOR
                                      -> FAILED
    AWAITING_SECOND_FACTOR -> AUTHENTICATED | FAILED

Only one attempt per Apple ID may be pending at a time.

Example:
    authenticator = SRPAuthenticator(AnisetteProvider())
    handle = authenticator.begin("user@example.com", "hunter2", "ani.sidestore.io")
    if handle.requires_second_factor:
        token = authenticator.complete_second_factor(handle, input("Code: "))
    else:
        token = handle.token
"""

from __future__ import annotations

import logging
import secrets
import threading
from typing import Optional

import srp._pysrp as _srp

from iloader.constants import GSA_SRP_PROTOCOLS, SRP_PRIVATE_KEY_BYTES
from iloader.core.anisette import AnisetteHeaders, AnisetteProvider
from iloader.core.auth.gsa import (
    GSAClient,
    GSAResponse,
    build_client_data,
    derive_password_key,
    extract_session_token,
)
from iloader.core.auth.models import AuthSession, AuthState, SessionHandle
from iloader.core.auth.second_factor import SecondFactorFlow
from iloader.exceptions import (
    InvalidCredentialsError,
    ServerError,
    SessionInProgressError,
    SessionNotFoundError,
    SRPError,
)

logger = logging.getLogger(__name__)

# Apple's variant: RFC 5054 padding, username left out of x
_srp.rfc5054_enable()
_srp.no_username_in_x()


class SRPAuthenticator:
    """
    Performs the GSA SRP-6a handshake.

    Args:
        anisette: Provider for the device-attestation headers.
        gsa: GSA transport. A default client is built when omitted.
    """

    def __init__(self, anisette: AnisetteProvider, gsa: Optional[GSAClient] = None):
        self._anisette = anisette
        self._gsa = gsa or GSAClient()
        self._second_factor = SecondFactorFlow(anisette, self._gsa)
        self._lock = threading.Lock()
        self._pending: dict[str, AuthSession] = {}

    def begin(self, identifier: str, secret: str, anisette_server: str) -> SessionHandle:
        """
        Start a login attempt.

        Args:
            identifier: Apple ID (email).
            secret: Apple ID password.
            anisette_server: Anisette server to fetch headers from.

        Returns:
            SessionHandle in state AUTHENTICATED (with token) or
            AWAITING_SECOND_FACTOR.

        Raises:
            SessionInProgressError: If an attempt for this Apple ID is pending.
            InvalidCredentialsError: If Apple rejects the credentials.
            ServerError: If Apple rejects the request otherwise.
            NetworkError: On transport failures (RequestTimeoutError on timeouts).
        """
        identifier = identifier.strip()
        session = AuthSession(
            identifier=identifier,
            password=bytearray(secret.encode("utf-8")),
            anisette_server=anisette_server,
        )

        with self._lock:
            if identifier in self._pending:
                session.discard()
                raise SessionInProgressError(identifier)
            self._pending[identifier] = session

        try:
            response = self._handshake(session)
            token = self._classify(session, response)
        except BaseException as e:
            self._fail(session, e)
            raise

        if session.state == AuthState.AWAITING_SECOND_FACTOR:
            logger.info(f"Two-factor authentication required for {identifier}")
            return session.handle()

        logger.info(f"Authenticated as {identifier}")
        self._release(session)
        return session.handle(token)

    def complete_second_factor(self, handle: SessionHandle, code: str) -> bytes:
        """
        Finish a login waiting for its second factor.

        The session is discarded whatever the outcome; a consumed code is
        never retried.

        Args:
            handle: Handle returned by begin().
            code: One-time code from the trusted device.

        Returns:
            Session token bytes.

        Raises:
            SessionNotFoundError: If the handle is unknown or not waiting for a code.
        """
        with self._lock:
            session = self._pending.get(handle.identifier)
            if (
                session is None
                or session.session_id != handle.session_id
                or session.state != AuthState.AWAITING_SECOND_FACTOR
            ):
                raise SessionNotFoundError()
            session.state = AuthState.AWAITING_SERVER_CHALLENGE

        try:
            token = self._second_factor.complete(session, code, self._handshake)
        except BaseException as e:
            self._fail(session, e)
            raise

        session.state = AuthState.AUTHENTICATED
        self._release(session)
        logger.info(f"Authenticated as {handle.identifier}")
        return token

    def cancel(self, handle: SessionHandle) -> None:
        """Discard a pending attempt. Unknown handles are ignored."""
        with self._lock:
            session = self._pending.get(handle.identifier)
            if session is None or session.session_id != handle.session_id:
                return
            del self._pending[handle.identifier]
        session.state = AuthState.FAILED
        session.discard()
        logger.debug(f"Cancelled sign-in for {handle.identifier}")

    def is_pending(self, identifier: str) -> bool:
        """Whether an attempt for this Apple ID is in flight or waiting for a code."""
        with self._lock:
            return identifier.strip() in self._pending

    def _handshake(self, session: AuthSession) -> GSAResponse:
        """Run init (and complete, when challenged) for the session."""
        anisette = self._anisette.fetch(session.anisette_server)
        cpd = build_client_data(anisette)

        user = _srp.User(
            session.identifier, b"", hash_alg=_srp.SHA256, ng_type=_srp.NG_2048
        )
        private_key = int.from_bytes(secrets.token_bytes(SRP_PRIVATE_KEY_BYTES), "big")
        user.a = private_key
        user.A = pow(user.g, private_key, user.N)
        _, public_key = user.start_authentication()

        session.srp_private_key = private_key
        session.srp_public_key = public_key
        session.derived_session_key = None
        session.state = AuthState.AWAITING_SERVER_CHALLENGE

        response = self._gsa.post(
            {
                "A2k": public_key,
                "cpd": cpd,
                "o": "init",
                "ps": GSA_SRP_PROTOCOLS,
                "u": session.identifier,
            },
            anisette,
            stage="gsa-init",
        )
        if not response.is_challenge:
            return response

        return self._answer_challenge(session, user, response, anisette, cpd)

    def _answer_challenge(
        self,
        session: AuthSession,
        user: _srp.User,
        challenge: GSAResponse,
        anisette: AnisetteHeaders,
        cpd: dict,
    ) -> GSAResponse:
        """Send the client proof M1 and verify the server proof M2."""
        challenge.raise_for_error()
        body = challenge.body
        protocol = body.get("sp", "s2k")
        user.p = derive_password_key(bytes(session.password), body["s"], body["i"], protocol)

        proof = user.process_challenge(body["s"], body["B"])
        if proof is None:
            raise SRPError("server challenge rejected")

        response = self._gsa.post(
            {
                "c": body["c"],
                "cpd": cpd,
                "M1": proof,
                "o": "complete",
                "u": session.identifier,
            },
            anisette,
            stage="gsa-complete",
        )

        server_proof = response.body.get("M2")
        if response.error_code == 0 and server_proof is not None:
            user.verify_session(server_proof)
            if not user.authenticated():
                raise SRPError("server proof mismatch")
            session.derived_session_key = user.get_session_key()

        return response

    def _classify(self, session: AuthSession, response: GSAResponse) -> Optional[bytes]:
        """Move the session to its next state based on a GSA reply."""
        if response.needs_second_factor:
            session.state = AuthState.AWAITING_SECOND_FACTOR
            return None

        response.raise_for_error()

        token = extract_session_token(response, session)
        if token is None:
            if response.status_code != 200:
                raise ServerError(response.status_code, f"HTTP {response.status_code}")
            raise SRPError("no session token in response")

        session.state = AuthState.AUTHENTICATED
        return token

    def _fail(self, session: AuthSession, error: BaseException) -> None:
        session.state = AuthState.FAILED
        self._release(session)
        if isinstance(error, ServerError) and not isinstance(error, InvalidCredentialsError):
            # Apple-side rejections are often stale headers
            self._anisette.invalidate(session.anisette_server)
        logger.debug(f"Sign-in for {session.identifier} failed: {type(error).__name__}")

    def _release(self, session: AuthSession) -> None:
        with self._lock:
            if self._pending.get(session.identifier) is session:
                del self._pending[session.identifier]
        session.discard()
