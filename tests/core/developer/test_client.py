"""Tests for the developer services client."""

from __future__ import annotations

import plistlib
from unittest.mock import MagicMock

import pytest
import requests

from conftest import TEST_ANISETTE_SERVER, TEST_APPLE_ID, TEST_TEAM_ID, TEST_TOKEN, make_plist_response, make_response
from iloader.core.accounts import Account
from iloader.core.developer import DeveloperServicesClient, ServiceContext
from iloader.exceptions import (
    ApiError,
    CertificateNotFoundError,
    NetworkError,
    ProfileGenerationFailedError,
    RequestTimeoutError,
)

BASE = "https://developerservices2.apple.com/services/QH65B2"


@pytest.fixture
def session() -> MagicMock:
    """Create a mock HTTP session answering resultCode 0."""
    session = MagicMock()
    session.post.return_value = make_plist_response({"resultCode": 0})
    return session


@pytest.fixture
def client(session, anisette_headers) -> DeveloperServicesClient:
    anisette = MagicMock()
    anisette.fetch.return_value = anisette_headers
    return DeveloperServicesClient(anisette, session=session)


@pytest.fixture
def context() -> ServiceContext:
    return ServiceContext(Account(TEST_APPLE_ID, TEST_TOKEN), TEST_ANISETTE_SERVER, TEST_TEAM_ID)


def sent_body(session: MagicMock) -> dict:
    return plistlib.loads(session.post.call_args.kwargs["data"])


class TestRequest:
    """Test the shared request envelope."""

    def test_url_and_headers(self, client, session, context, anisette_headers):
        """Should post to the versioned iOS action URL with Anisette headers."""
        client.list_certificates(context)

        args, kwargs = session.post.call_args
        assert args[0] == f"{BASE}/ios/listAllDevelopmentCerts.action?clientId=XABBG36SBA"
        assert kwargs["headers"]["User-Agent"] == "Xcode"
        assert kwargs["headers"]["Accept"] == "text/x-xml-plist"
        assert kwargs["headers"]["X-Apple-I-MD-M"] == anisette_headers.machine_id

    def test_body(self, client, session, context):
        """Should carry the session token, client id and team."""
        client.list_certificates(context)

        body = sent_body(session)
        assert body["myacinfo"] == TEST_TOKEN.decode()
        assert body["clientId"] == "XABBG36SBA"
        assert body["protocolVersion"] == "QH65B2"
        assert body["teamId"] == TEST_TEAM_ID
        assert body["userLocale"] == ["en_US"]
        assert body["requestId"]

    def test_list_teams_has_no_platform(self, client, session, context):
        session.post.return_value = make_plist_response(
            {"resultCode": 0, "teams": [{"teamId": TEST_TEAM_ID, "name": "Test Team", "type": "Individual"}]}
        )

        teams = client.list_teams(context)

        assert session.post.call_args.args[0] == f"{BASE}/listTeams.action?clientId=XABBG36SBA"
        assert teams[0].id == TEST_TEAM_ID
        assert teams[0].to_dict()["name"] == "Test Team"

    def test_result_code_error(self, client, session, context):
        """Should raise ApiError carrying the result code and message."""
        session.post.return_value = make_plist_response(
            {"resultCode": 7460, "userString": "Too many certificates"}
        )

        with pytest.raises(ApiError) as exc_info:
            client.list_certificates(context)
        assert exc_info.value.result_code == 7460
        assert "Too many certificates" in str(exc_info.value)

    def test_http_error(self, client, session, context):
        session.post.return_value = make_response(503, b"<html>down</html>", "Service Unavailable")

        with pytest.raises(ApiError) as exc_info:
            client.list_certificates(context)
        assert exc_info.value.status == 503

    def test_unreadable_body(self, client, session, context):
        session.post.return_value = make_response(200, b"not a plist")

        with pytest.raises(ApiError):
            client.list_certificates(context)

    def test_timeout(self, client, session, context):
        session.post.side_effect = requests.Timeout("slow")

        with pytest.raises(RequestTimeoutError):
            client.list_certificates(context)

    def test_transport_error(self, client, session, context):
        session.post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(NetworkError):
            client.list_certificates(context)

    def test_team_required(self, client, session):
        context = ServiceContext(Account(TEST_APPLE_ID, TEST_TOKEN), TEST_ANISETTE_SERVER)

        with pytest.raises(ApiError):
            client.list_app_ids(context)
        session.post.assert_not_called()


class TestCertificates:
    """Test certificate actions."""

    def test_list_certificates(self, client, session, context):
        session.post.return_value = make_plist_response(
            {
                "resultCode": 0,
                "certificates": [
                    {
                        "certificateId": "CERT1",
                        "name": "Apple Development: user@example.com",
                        "serialNumber": "1A2B3C",
                        "machineName": "iloader",
                        "certContent": b"DER",
                    }
                ],
            }
        )

        certs = client.list_certificates(context)

        assert certs[0].id == "CERT1"
        assert certs[0].serial_number == "1A2B3C"
        assert certs[0].content == b"DER"
        assert certs[0].to_dict()["machine_name"] == "iloader"

    def test_revoke_sends_serial(self, client, session, context):
        client.revoke_certificate(context, "1A2B3C")

        assert "revokeDevelopmentCert.action" in session.post.call_args.args[0]
        assert sent_body(session)["serialNumber"] == "1A2B3C"

    def test_download_certificate_by_serial(self, client, session, context):
        session.post.return_value = make_plist_response(
            {"resultCode": 0, "certificates": [{"serialNumber": "1A2B3C", "certContent": b"DER"}]}
        )

        assert client.download_certificate(context, "1a2b3c").content == b"DER"

    def test_download_certificate_missing(self, client, session, context):
        session.post.return_value = make_plist_response({"resultCode": 0, "certificates": []})

        with pytest.raises(CertificateNotFoundError):
            client.download_certificate(context, "1A2B3C")

    def test_submit_csr(self, client, session, context):
        session.post.return_value = make_plist_response(
            {"resultCode": 0, "certRequest": {"certRequestId": "REQ1", "serialNum": "ABC"}}
        )

        request = client.submit_csr(context, "-----BEGIN CERTIFICATE REQUEST-----", "iloader")

        assert request.certificate_id == "REQ1"
        assert request.serial_number == "ABC"
        body = sent_body(session)
        assert body["csrContent"].startswith("-----BEGIN")
        assert body["machineName"] == "iloader"


class TestAppIdsAndProfiles:
    """Test App ID, device and profile actions."""

    def test_list_app_ids_with_quota(self, client, session, context):
        session.post.return_value = make_plist_response(
            {
                "resultCode": 0,
                "appIds": [{"appIdId": "AID1", "identifier": "com.example.test", "name": "Test"}],
                "maxQuantity": 10,
                "availableQuantity": 9,
            }
        )

        listing = client.list_app_ids(context)

        assert listing.app_ids[0].id == "AID1"
        assert listing.max_quantity == 10
        assert listing.available_quantity == 9

    def test_create_app_id(self, client, session, context):
        session.post.return_value = make_plist_response(
            {"resultCode": 0, "appId": {"appIdId": "AID2", "identifier": "com.example.new", "name": "New"}}
        )

        app_id = client.create_app_id(context, "com.example.new", "New")

        assert app_id.id == "AID2"
        assert sent_body(session)["identifier"] == "com.example.new"

    def test_delete_app_id(self, client, session, context):
        client.delete_app_id(context, "AID1")

        assert "deleteAppId.action" in session.post.call_args.args[0]
        assert sent_body(session)["appIdId"] == "AID1"

    def test_register_device(self, client, session, context):
        session.post.return_value = make_plist_response(
            {"resultCode": 0, "device": {"deviceId": "D1", "name": "iPhone", "deviceNumber": "UDID1"}}
        )

        device = client.register_device(context, "iPhone", "UDID1")

        assert device.udid == "UDID1"
        assert sent_body(session)["deviceNumber"] == "UDID1"

    def test_download_profile(self, client, session, context):
        session.post.return_value = make_plist_response(
            {
                "resultCode": 0,
                "provisioningProfile": {
                    "provisioningProfileId": "PP1",
                    "name": "Team Profile",
                    "encodedProfile": b"profile-bytes",
                },
            }
        )

        profile = client.download_provisioning_profile(context, "AID1", "CERT1")

        assert profile.data == b"profile-bytes"
        assert profile.profile_id == "PP1"
        assert profile.certificate_id == "CERT1"
        assert sent_body(session)["appIdId"] == "AID1"

    def test_download_profile_missing(self, client, session, context):
        """Should raise ProfileGenerationFailedError without a profile."""
        session.post.return_value = make_plist_response({"resultCode": 0})

        with pytest.raises(ProfileGenerationFailedError):
            client.download_provisioning_profile(context, "AID1")
