"""Tests for the Grand Slam wire protocol helpers."""

from __future__ import annotations

import hashlib
import hmac
import plistlib
from unittest.mock import MagicMock

import pytest
import requests
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from conftest import TEST_APPLE_ID, encrypt_server_data, make_plist_response, make_response
from iloader.core.auth import AuthSession, GSAClient, GSAResponse
from iloader.core.auth.gsa import (
    build_client_data,
    decrypt_server_data,
    derive_password_key,
    extract_session_token,
    parse_plist,
)
from iloader.exceptions import (
    InvalidCredentialsError,
    NetworkError,
    RequestTimeoutError,
    ServerError,
    SRPError,
)

SESSION_KEY = bytes(range(32))


def encrypt_gcm(session_key: bytes, data: bytes) -> bytes:
    key = hmac.new(session_key, b"extra data key:", hashlib.sha256).digest()
    iv = hmac.new(session_key, b"extra data iv:", hashlib.sha256).digest()[:12]
    return AESGCM(key).encrypt(iv, data, None)


def make_session(session_key=None) -> AuthSession:
    session = AuthSession(TEST_APPLE_ID, bytearray(b"hunter2"), "ani.example.com")
    session.derived_session_key = session_key
    return session


class TestParsePlist:
    """Test property list body parsing."""

    def test_parses_full_plist(self):
        assert parse_plist(plistlib.dumps({"a": 1})) == {"a": 1}

    def test_wraps_bare_dict(self):
        """Should accept a <dict> body without the XML prologue."""
        body = b"<dict><key>Status</key><dict><key>ec</key><integer>0</integer></dict></dict>"
        assert parse_plist(body) == {"Status": {"ec": 0}}

    def test_rejects_garbage(self):
        assert parse_plist(b"<html>Service Unavailable</html>") is None

    def test_rejects_non_dict(self):
        assert parse_plist(plistlib.dumps(["a", "b"])) is None


class TestGSAResponse:
    """Test GSAResponse classification."""

    def test_raise_for_error_passes_on_zero(self):
        GSAResponse(200, {"Status": {"ec": 0}}).raise_for_error()

    def test_invalid_credentials(self):
        """Should map -20101 to InvalidCredentialsError."""
        response = GSAResponse(200, {"Status": {"ec": -20101, "em": "Your Apple ID or password was incorrect."}})
        with pytest.raises(InvalidCredentialsError) as exc_info:
            response.raise_for_error()
        assert exc_info.value.code == -20101
        assert exc_info.value.user_message == "Invalid Apple ID or password"

    def test_other_codes_are_server_errors(self):
        """Should carry code and message of other failures."""
        response = GSAResponse(200, {"Status": {"ec": -22406, "em": "Locked"}})
        with pytest.raises(ServerError) as exc_info:
            response.raise_for_error()
        assert not isinstance(exc_info.value, InvalidCredentialsError)
        assert exc_info.value.code == -22406
        assert "Locked" in str(exc_info.value)

    def test_needs_second_factor(self):
        response = GSAResponse(200, {"Status": {"ec": 0, "au": "trustedDeviceSecondaryAuth"}})
        assert response.needs_second_factor
        assert not GSAResponse(200, {"Status": {"ec": 0}}).needs_second_factor

    def test_is_challenge(self):
        body = {"s": b"salt", "i": 1000, "B": b"B", "c": "cookie"}
        assert GSAResponse(200, body).is_challenge
        del body["c"]
        assert not GSAResponse(200, body).is_challenge


class TestDerivePasswordKey:
    """Test the PBKDF2 password derivation."""

    def test_s2k(self):
        expected = hashlib.pbkdf2_hmac(
            "sha256", hashlib.sha256(b"hunter2").digest(), b"salt", 1000, dklen=32
        )
        assert derive_password_key(b"hunter2", b"salt", 1000) == expected

    def test_s2k_fo_hashes_hex_digest(self):
        expected = hashlib.pbkdf2_hmac(
            "sha256", hashlib.sha256(b"hunter2").hexdigest().encode(), b"salt", 1000, dklen=32
        )
        assert derive_password_key(b"hunter2", b"salt", 1000, "s2k_fo") == expected
        assert expected != derive_password_key(b"hunter2", b"salt", 1000, "s2k")


class TestServerData:
    """Test decryption of server-provided data and token extraction."""

    def test_decrypt_cbc(self):
        payload = plistlib.dumps({"GsIdmsToken": "token"})
        assert decrypt_server_data(SESSION_KEY, encrypt_server_data(SESSION_KEY, payload), 2) == payload

    def test_decrypt_gcm(self):
        payload = plistlib.dumps({"GsIdmsToken": "token"})
        assert decrypt_server_data(SESSION_KEY, encrypt_gcm(SESSION_KEY, payload), 4) == payload

    def test_decrypt_falls_back_to_other_mode(self):
        """Should try GCM when CBC was announced but does not decrypt."""
        payload = b"GsIdmsToken payload"
        assert decrypt_server_data(SESSION_KEY, encrypt_gcm(SESSION_KEY, payload), 2) == payload

    def test_decrypt_with_wrong_key_fails(self):
        data = encrypt_gcm(SESSION_KEY, b"payload")
        with pytest.raises(ValueError):
            decrypt_server_data(b"\xff" * 32, data, 4)

    def test_string_spd_is_token(self):
        response = GSAResponse(200, {"spd": "sig-session-token"})
        assert extract_session_token(response, make_session()) == b"sig-session-token"

    def test_encrypted_spd_yields_idms_token(self):
        """Should decrypt spd and keep the server data on the session."""
        spd = encrypt_server_data(SESSION_KEY, plistlib.dumps({"GsIdmsToken": "idms", "adsid": "001"}))
        session = make_session(SESSION_KEY)

        token = extract_session_token(GSAResponse(200, {"spd": spd, "et": 2}), session)

        assert token == b"idms"
        assert session.server_data["adsid"] == "001"

    def test_undecryptable_spd_raises(self):
        session = make_session(SESSION_KEY)
        with pytest.raises(SRPError):
            extract_session_token(GSAResponse(200, {"spd": b"\x01" * 47}), session)

    def test_cookie_is_fallback(self):
        response = GSAResponse(200, {"Status": {"ec": 0}}, cookie_token=b"cookie")
        assert extract_session_token(response, make_session()) == b"cookie"

    def test_no_token(self):
        assert extract_session_token(GSAResponse(200, {}), make_session()) is None


class TestGSAClient:
    """Test the GSA transport."""

    def test_post_wraps_request_and_unwraps_response(self, anisette_headers):
        """Should post Header/Request and return the Response dictionary."""
        session = MagicMock()
        session.post.return_value = make_plist_response(
            {"Response": {"Status": {"ec": 0}, "spd": "tok"}}
        )
        client = GSAClient(session=session, url="https://gsa.example.com/gs", timeout=7)

        response = client.post({"o": "init", "u": TEST_APPLE_ID}, anisette_headers)

        assert response.body == {"Status": {"ec": 0}, "spd": "tok"}
        args, kwargs = session.post.call_args
        assert args[0] == "https://gsa.example.com/gs"
        assert kwargs["timeout"] == 7
        sent = plistlib.loads(kwargs["data"])
        assert sent["Header"]["Version"] == "1.0.1"
        assert sent["Request"] == {"o": "init", "u": TEST_APPLE_ID}
        assert kwargs["headers"]["X-Apple-I-MD"] == anisette_headers.one_time_password

    def test_post_reads_myacinfo_cookie(self, anisette_headers):
        session = MagicMock()
        session.post.return_value = make_response(
            200,
            plistlib.dumps({"Response": {"Status": {"ec": 0}}}),
            cookies={"myacinfo": "cookie-token"},
        )
        response = GSAClient(session=session).post({"o": "init"}, anisette_headers)
        assert response.cookie_token == b"cookie-token"

    def test_post_timeout(self, anisette_headers):
        """Should raise RequestTimeoutError tagged with the stage."""
        session = MagicMock()
        session.post.side_effect = requests.Timeout("slow")

        with pytest.raises(RequestTimeoutError) as exc_info:
            GSAClient(session=session).post({"o": "init"}, anisette_headers, stage="gsa-init")
        assert exc_info.value.stage == "gsa-init"

    def test_post_connection_error(self, anisette_headers):
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(NetworkError):
            GSAClient(session=session).post({"o": "init"}, anisette_headers)

    def test_client_data_carries_anisette(self, anisette_headers):
        cpd = build_client_data(anisette_headers)
        assert cpd["X-Apple-I-MD-M"] == anisette_headers.machine_id
        assert cpd["bootstrap"] is True
        assert cpd["loc"] == "en_US"
