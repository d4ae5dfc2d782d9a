"""
Grand Slam Authentication wire protocol.

Request building, transport, response parsing and the cryptographic
helpers shared by the SRP handshake and the second-factor flow.

References:
    - RFC 5054 (SRP for TLS, group parameters)
    - https://github.com/SideStore (AltSign GSA implementation notes)
"""

from __future__ import annotations

import hashlib
import hmac
import logging
import plistlib
from dataclasses import dataclass
from typing import Any, Optional
from xml.parsers.expat import ExpatError

import requests
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from iloader.constants import (
    GSA_ACCEPT_LANGUAGE,
    GSA_CONTENT_TYPE,
    GSA_ERROR_INVALID_CREDENTIALS,
    GSA_PROTOCOL_VERSION,
    GSA_SECOND_FACTOR_STATES,
    GSA_TIMEOUT,
    GSA_URL,
    GSA_USER_AGENT,
)
from iloader.core.anisette import AnisetteHeaders
from iloader.core.auth.models import AuthSession
from iloader.exceptions import (
    InvalidCredentialsError,
    NetworkError,
    RequestTimeoutError,
    ServerError,
    SRPError,
)

logger = logging.getLogger(__name__)

PLIST_HEADER = (
    b'<?xml version="1.0" encoding="UTF-8"?>\n'
    b'<!DOCTYPE plist PUBLIC "-//Apple//DTD PLIST 1.0//EN" '
    b'"http://www.apple.com/DTDs/PropertyList-1.0.dtd">\n'
    b'<plist version="1.0">\n'
)


@dataclass
class GSAResponse:
    """A parsed GSA reply."""

    status_code: int
    body: dict[str, Any]
    cookie_token: Optional[bytes] = None

    @property
    def status(self) -> dict[str, Any]:
        status = self.body.get("Status")
        return status if isinstance(status, dict) else {}

    @property
    def error_code(self) -> int:
        try:
            return int(self.status.get("ec", 0))
        except (TypeError, ValueError):
            return -1

    @property
    def needs_second_factor(self) -> bool:
        return self.status.get("au") in GSA_SECOND_FACTOR_STATES

    @property
    def is_challenge(self) -> bool:
        """Whether the body is an SRP challenge (salt, iterations, B, cookie)."""
        return all(key in self.body for key in ("s", "i", "B", "c"))

    def raise_for_error(self) -> None:
        """Map a non-zero Status.ec to the matching exception."""
        code = self.error_code
        if code == 0:
            return
        message = self.status.get("em")
        if code == GSA_ERROR_INVALID_CREDENTIALS:
            raise InvalidCredentialsError(code, message)
        raise ServerError(code, message)


def build_client_data(anisette: AnisetteHeaders) -> dict[str, Any]:
    """Client-provided data envelope sent with every GSA request."""
    cpd: dict[str, Any] = dict(anisette.as_request_headers())
    cpd.update(
        {
            "bootstrap": True,
            "icscrec": True,
            "pbe": False,
            "prkgen": True,
            "svct": "iCloud",
            "loc": anisette.locale,
        }
    )
    return cpd


def parse_plist(data: bytes) -> Optional[dict[str, Any]]:
    """
    Parse a property list body.

    Apple sometimes returns a bare <dict>...</dict> without the standard
    XML prologue; that form is wrapped before parsing. Returns None when
    the body is not a dictionary property list.
    """
    try:
        parsed = plistlib.loads(data)
    except (ValueError, ExpatError):
        stripped = data.strip(b"\x00").strip()
        if not stripped.startswith(b"<dict>"):
            return None
        try:
            parsed = plistlib.loads(PLIST_HEADER + stripped + b"\n</plist>")
        except (ValueError, ExpatError):
            return None

    return parsed if isinstance(parsed, dict) else None


class GSAClient:
    """
    Thin transport for the GSA endpoint.

    Every request is a property list posted with the Anisette headers
    attached. Transport failures surface as NetworkError or
    RequestTimeoutError tagged with the caller's stage name.
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        url: str = GSA_URL,
        timeout: float = GSA_TIMEOUT,
        user_agent: str = GSA_USER_AGENT,
        locale: str = GSA_ACCEPT_LANGUAGE,
    ):
        self._session = session or requests.Session()
        self._url = url
        self._timeout = timeout
        self._user_agent = user_agent
        self._locale = locale

    def post(
        self,
        request: dict[str, Any],
        anisette: AnisetteHeaders,
        stage: str = "gsa",
    ) -> GSAResponse:
        """
        POST one request payload.

        Args:
            request: Contents of the "Request" dictionary.
            anisette: Headers to attach.
            stage: Stage name attached to transport errors.

        Returns:
            GSAResponse with the unwrapped "Response" dictionary.
        """
        body = {
            "Header": {"Version": GSA_PROTOCOL_VERSION},
            "Request": request,
        }
        headers = dict(anisette.as_request_headers())
        headers.update(
            {
                "Content-Type": GSA_CONTENT_TYPE,
                "Accept": "*/*",
                "User-Agent": self._user_agent,
                "Accept-Language": self._locale,
            }
        )

        logger.debug(f"GSA request o={request.get('o')} ({stage})")
        try:
            response = self._session.post(
                self._url,
                data=plistlib.dumps(body, fmt=plistlib.FMT_XML),
                headers=headers,
                timeout=self._timeout,
            )
        except requests.Timeout as e:
            raise RequestTimeoutError(stage, self._timeout) from e
        except requests.RequestException as e:
            raise NetworkError(stage, type(e).__name__) from e

        parsed = parse_plist(response.content) or {}
        inner = parsed.get("Response", parsed)
        if not isinstance(inner, dict):
            inner = {}

        cookie_token = None
        if response.status_code == 200:
            cookie = response.cookies.get("myacinfo")
            if cookie:
                cookie_token = cookie.encode("utf-8")

        logger.debug(f"GSA response HTTP {response.status_code} ({stage})")
        return GSAResponse(response.status_code, inner, cookie_token)


def derive_password_key(
    password: bytes, salt: bytes, iterations: int, protocol: str = "s2k"
) -> bytes:
    """Derive the SRP password using Apple's PBKDF2 scheme."""
    digest = hashlib.sha256(password).digest()
    if protocol == "s2k_fo":
        digest = digest.hex().encode()
    return hashlib.pbkdf2_hmac("sha256", digest, salt, iterations, dklen=32)


def _extra_data_key(session_key: bytes) -> bytes:
    return hmac.new(session_key, b"extra data key:", hashlib.sha256).digest()


def _extra_data_iv(session_key: bytes) -> bytes:
    return hmac.new(session_key, b"extra data iv:", hashlib.sha256).digest()


def decrypt_server_data(session_key: bytes, data: bytes, encryption_type: int = 2) -> bytes:
    """
    Decrypt the server-provided data (spd) of a completed handshake.

    Type 2 is AES-256-CBC, type 4 (newer accounts) AES-256-GCM. The other
    mode is tried when the announced one does not decrypt cleanly.

    Raises:
        ValueError: If neither mode decrypts the payload.
    """
    modes_to_try = [_decrypt_gcm, _decrypt_cbc] if encryption_type == 4 else [_decrypt_cbc, _decrypt_gcm]
    for decrypt in modes_to_try:
        try:
            return decrypt(session_key, data)
        except (ValueError, InvalidTag):
            continue
    raise ValueError("server data could not be decrypted")


def _decrypt_cbc(session_key: bytes, data: bytes) -> bytes:
    cipher = Cipher(
        algorithms.AES(_extra_data_key(session_key)),
        modes.CBC(_extra_data_iv(session_key)[:16]),
    )
    decryptor = cipher.decryptor()
    decrypted = decryptor.update(data) + decryptor.finalize()

    unpadder = padding.PKCS7(128).unpadder()
    return unpadder.update(decrypted) + unpadder.finalize()


def _decrypt_gcm(session_key: bytes, data: bytes) -> bytes:
    aes = AESGCM(_extra_data_key(session_key))
    return aes.decrypt(_extra_data_iv(session_key)[:12], data, None)


def extract_session_token(response: GSAResponse, session: AuthSession) -> Optional[bytes]:
    """
    Pull the session token out of a successful reply.

    A plain string or raw bytes ``spd`` is the token itself. Once the SRP
    session key exists, ``spd`` is the encrypted server data whose
    ``GsIdmsToken`` is the token; the decrypted dictionary is kept on the
    session. A ``myacinfo`` cookie on an HTTP 200 reply is the fallback.

    Raises:
        SRPError: If encrypted server data cannot be decrypted.
    """
    spd = response.body.get("spd")
    if isinstance(spd, str) and spd:
        return spd.encode("utf-8")

    if isinstance(spd, bytes) and spd:
        if session.derived_session_key is None:
            return spd
        try:
            encryption_type = int(response.body.get("et", 2))
        except (TypeError, ValueError):
            encryption_type = 2
        try:
            plain = decrypt_server_data(session.derived_session_key, spd, encryption_type)
        except ValueError as e:
            raise SRPError("server data could not be decrypted") from e
        server_data = parse_plist(plain)
        if server_data is None:
            raise SRPError("server data is not a property list")
        session.server_data = server_data
        token = server_data.get("GsIdmsToken")
        if isinstance(token, str) and token:
            return token.encode("utf-8")
        if isinstance(token, bytes) and token:
            return token

    return response.cookie_token
