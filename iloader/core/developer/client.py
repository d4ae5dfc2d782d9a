"""
Authenticated RPC client for Apple's developer services.

Every action is a property list POSTed with the Anisette headers and the
account's session token. The client knows nothing about deletion policy;
callers decide whether destructive calls may run.
"""

from __future__ import annotations

import logging
import plistlib
import uuid
from typing import Any, Optional

import requests

from iloader.constants import (
    DEFAULT_MACHINE_NAME,
    DEVELOPER_CLIENT_ID,
    DEVELOPER_PLATFORM_IOS,
    DEVELOPER_PROTOCOL_VERSION,
    DEVELOPER_SERVICES_URL,
    DEVELOPER_TIMEOUT,
    DEVELOPER_USER_AGENT,
    GSA_ACCEPT_LANGUAGE,
    GSA_CONTENT_TYPE,
)
from iloader.core.anisette import AnisetteProvider
from iloader.core.auth.gsa import parse_plist
from iloader.core.developer.models import (
    AppId,
    AppIdList,
    Certificate,
    CertificateRequest,
    Device,
    ProvisioningProfile,
    ServiceContext,
    Team,
)
from iloader.exceptions import (
    ApiError,
    CertificateNotFoundError,
    NetworkError,
    ProfileGenerationFailedError,
    RequestTimeoutError,
)

logger = logging.getLogger(__name__)


class DeveloperServicesClient:
    """
    Client for developerservices2.apple.com.

    Example:
        client = DeveloperServicesClient(AnisetteProvider())
        context = ServiceContext(account, "ani.sidestore.io", team_id="ABCDE12345")
        for cert in client.list_certificates(context):
            print(cert.name, cert.serial_number)
    """

    def __init__(
        self,
        anisette: AnisetteProvider,
        session: Optional[requests.Session] = None,
        base_url: str = DEVELOPER_SERVICES_URL,
        client_id: str = DEVELOPER_CLIENT_ID,
        protocol_version: str = DEVELOPER_PROTOCOL_VERSION,
        timeout: float = DEVELOPER_TIMEOUT,
        locale: str = GSA_ACCEPT_LANGUAGE,
    ):
        self._anisette = anisette
        self._session = session or requests.Session()
        self._base_url = base_url.rstrip("/")
        self._client_id = client_id
        self._protocol_version = protocol_version
        self._timeout = timeout
        self._locale = locale

    def _url(self, action: str, platform: Optional[str]) -> str:
        parts = [self._base_url, self._protocol_version]
        if platform:
            parts.append(platform)
        parts.append(f"{action}.action")
        return "/".join(parts) + f"?clientId={self._client_id}"

    def _request(
        self,
        context: ServiceContext,
        action: str,
        params: Optional[dict[str, Any]] = None,
        platform: Optional[str] = DEVELOPER_PLATFORM_IOS,
    ) -> dict[str, Any]:
        """
        Send one action and return the parsed response.

        Raises:
            ApiError: If the status is not 200, the body does not parse,
                or resultCode is non-zero.
            NetworkError: On transport failure.
            RequestTimeoutError: If the service does not answer in time.
        """
        anisette = self._anisette.fetch(context.anisette_server)

        body: dict[str, Any] = {
            "clientId": self._client_id,
            "myacinfo": context.account.session_token.decode("utf-8", errors="replace"),
            "protocolVersion": self._protocol_version,
            "requestId": str(uuid.uuid4()).upper(),
            "userLocale": [self._locale],
        }
        if params:
            body.update(params)

        headers = dict(anisette.as_request_headers())
        headers.update(
            {
                "Content-Type": GSA_CONTENT_TYPE,
                "Accept": "text/x-xml-plist",
                "Accept-Language": self._locale,
                "User-Agent": DEVELOPER_USER_AGENT,
            }
        )

        stage = f"developer-services:{action}"
        logger.debug(f"Developer services request {action}")
        try:
            response = self._session.post(
                self._url(action, platform),
                data=plistlib.dumps(body, fmt=plistlib.FMT_XML),
                headers=headers,
                timeout=self._timeout,
            )
        except requests.Timeout as e:
            raise RequestTimeoutError(stage, self._timeout) from e
        except requests.RequestException as e:
            raise NetworkError(stage, type(e).__name__) from e

        result = parse_plist(response.content)
        if response.status_code != 200:
            message = result.get("userString") if result else None
            raise ApiError(response.status_code, message or response.reason)
        if result is None:
            raise ApiError(response.status_code, "Unreadable response")

        try:
            result_code = int(result.get("resultCode", 0))
        except (TypeError, ValueError):
            result_code = -1
        if result_code != 0:
            message = result.get("userString") or result.get("resultString")
            raise ApiError(response.status_code, message, result_code)

        logger.debug(f"Developer services {action} succeeded")
        return result

    def _team_params(self, context: ServiceContext, **params: Any) -> dict[str, Any]:
        if not context.team_id:
            raise ApiError(0, "No development team selected")
        return {"teamId": context.team_id, **params}

    # Teams

    def list_teams(self, context: ServiceContext) -> list[Team]:
        """List the development teams of the account."""
        result = self._request(context, "listTeams", platform=None)
        return [Team.from_plist(t) for t in result.get("teams", [])]

    # Certificates

    def list_certificates(self, context: ServiceContext) -> list[Certificate]:
        """List the team's development certificates."""
        result = self._request(
            context, "listAllDevelopmentCerts", self._team_params(context)
        )
        return [Certificate.from_plist(c) for c in result.get("certificates", [])]

    def revoke_certificate(self, context: ServiceContext, serial_number: str) -> None:
        """Revoke a development certificate by serial number."""
        self._request(
            context,
            "revokeDevelopmentCert",
            self._team_params(context, serialNumber=serial_number),
        )
        logger.info(f"Revoked certificate {serial_number}")

    def download_certificate(self, context: ServiceContext, serial_number: str) -> Certificate:
        """
        Fetch a certificate including its DER content.

        Raises:
            CertificateNotFoundError: If the team has no certificate with
                this serial number or its content is missing.
        """
        wanted = serial_number.upper()
        for cert in self.list_certificates(context):
            if cert.serial_number.upper() == wanted:
                if cert.content is None:
                    raise CertificateNotFoundError("certificate content not returned")
                return cert
        raise CertificateNotFoundError(f"no certificate with serial {serial_number}")

    def submit_csr(
        self,
        context: ServiceContext,
        csr_pem: str,
        machine_name: str = DEFAULT_MACHINE_NAME,
    ) -> CertificateRequest:
        """Submit a certificate signing request for a new development certificate."""
        result = self._request(
            context,
            "submitDevelopmentCSR",
            self._team_params(
                context,
                csrContent=csr_pem,
                machineId=str(uuid.uuid4()).upper(),
                machineName=machine_name,
            ),
        )
        request = CertificateRequest.from_plist(result.get("certRequest", {}))
        logger.info(f"Requested certificate {request.serial_number}")
        return request

    # App IDs

    def list_app_ids(self, context: ServiceContext) -> AppIdList:
        """List the team's App IDs and the remaining quota."""
        result = self._request(context, "listAppIds", self._team_params(context))
        return AppIdList(
            app_ids=[AppId.from_plist(a) for a in result.get("appIds", [])],
            max_quantity=result.get("maxQuantity"),
            available_quantity=result.get("availableQuantity"),
        )

    def create_app_id(self, context: ServiceContext, identifier: str, name: str) -> AppId:
        """Register a new App ID."""
        result = self._request(
            context,
            "addAppId",
            self._team_params(context, identifier=identifier, name=name),
        )
        app_id = AppId.from_plist(result.get("appId", {}))
        logger.info(f"Created App ID {app_id.identifier or identifier}")
        return app_id

    def delete_app_id(self, context: ServiceContext, app_id_id: str) -> None:
        """Delete an App ID. Callers enforce the deletion policy."""
        self._request(
            context, "deleteAppId", self._team_params(context, appIdId=app_id_id)
        )
        logger.info(f"Deleted App ID {app_id_id}")

    # Devices

    def list_devices(self, context: ServiceContext) -> list[Device]:
        """List devices registered to the team."""
        result = self._request(context, "listDevices", self._team_params(context))
        return [Device.from_plist(d) for d in result.get("devices", [])]

    def register_device(self, context: ServiceContext, name: str, udid: str) -> Device:
        """Register a device UDID with the team."""
        result = self._request(
            context,
            "addDevice",
            self._team_params(context, name=name, deviceNumber=udid),
        )
        return Device.from_plist(result.get("device", {}))

    # Provisioning profiles

    def download_provisioning_profile(
        self,
        context: ServiceContext,
        app_id_id: str,
        certificate_id: Optional[str] = None,
    ) -> ProvisioningProfile:
        """
        Download (and have Apple generate if needed) the team profile for an App ID.

        Raises:
            ProfileGenerationFailedError: If the response carries no profile.
        """
        result = self._request(
            context,
            "downloadTeamProvisioningProfile",
            self._team_params(context, appIdId=app_id_id),
        )
        profile = result.get("provisioningProfile") or {}
        encoded = profile.get("encodedProfile")
        if not isinstance(encoded, bytes) or not encoded:
            raise ProfileGenerationFailedError("no profile in response")

        return ProvisioningProfile(
            data=encoded,
            profile_id=profile.get("provisioningProfileId", ""),
            name=profile.get("name", ""),
            certificate_id=certificate_id,
        )
