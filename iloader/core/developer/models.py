"""
Data models for Apple developer services.

Each model is built from the property-list dictionaries the service
returns. Apple is inconsistent about key names across actions, so the
parsers accept the known variants.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from iloader.core.accounts import Account


def _as_datetime(value: Any) -> Optional[datetime]:
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value)
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    return None


@dataclass(frozen=True)
class ServiceContext:
    """
    Everything one developer services call needs.

    Attributes:
        account: Account whose session token authenticates the call.
        anisette_server: Server to fetch Anisette headers from.
        team_id: Development team the call acts on. Not needed for list_teams.
    """

    account: Account
    anisette_server: str
    team_id: Optional[str] = None


@dataclass
class Team:
    """A development team the Apple ID belongs to."""

    id: str
    name: str
    type: str = ""

    @classmethod
    def from_plist(cls, data: dict[str, Any]) -> Team:
        return cls(
            id=data.get("teamId", ""),
            name=data.get("name", ""),
            type=data.get("type", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "type": self.type}


@dataclass
class Certificate:
    """
    A development certificate.

    Attributes:
        id: Certificate id used by the service.
        name: Certificate name (usually "Apple Development: ...").
        serial_number: Hex serial number.
        machine_name: Name of the machine that requested it.
        expiration: Expiration date, if reported.
        content: DER encoded certificate, if included in the response.
    """

    id: str
    name: str
    serial_number: str
    machine_name: Optional[str] = None
    expiration: Optional[datetime] = None
    content: Optional[bytes] = field(default=None, repr=False)

    @classmethod
    def from_plist(cls, data: dict[str, Any]) -> Certificate:
        content = data.get("certContent")
        if isinstance(content, str):
            content = None
        return cls(
            id=data.get("certificateId", data.get("id", "")),
            name=data.get("name", ""),
            serial_number=data.get("serialNumber", data.get("serialNum", "")),
            machine_name=data.get("machineName"),
            expiration=_as_datetime(data.get("expirationDate")),
            content=content,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "serial_number": self.serial_number,
            "machine_name": self.machine_name,
            "expiration": self.expiration.isoformat() if self.expiration else None,
        }


@dataclass
class AppId:
    """A registered App ID."""

    id: str
    identifier: str
    name: str
    features: dict[str, Any] = field(default_factory=dict)
    expiration: Optional[datetime] = None

    @classmethod
    def from_plist(cls, data: dict[str, Any]) -> AppId:
        features = data.get("features")
        return cls(
            id=data.get("appIdId", ""),
            identifier=data.get("identifier", ""),
            name=data.get("name", ""),
            features=features if isinstance(features, dict) else {},
            expiration=_as_datetime(data.get("expirationDate")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "identifier": self.identifier,
            "name": self.name,
            "expiration": self.expiration.isoformat() if self.expiration else None,
        }


@dataclass
class AppIdList:
    """App IDs of a team plus the free-account quota."""

    app_ids: list[AppId]
    max_quantity: Optional[int] = None
    available_quantity: Optional[int] = None


@dataclass
class Device:
    """A device registered to a team."""

    id: str
    name: str
    udid: str

    @classmethod
    def from_plist(cls, data: dict[str, Any]) -> Device:
        return cls(
            id=data.get("deviceId", ""),
            name=data.get("name", ""),
            udid=data.get("deviceNumber", ""),
        )


@dataclass
class ProvisioningProfile:
    """
    A provisioning profile as returned by the service.

    The data is the signed CMS blob written to embedded.mobileprovision;
    use iloader.core.signing.profile to read what it contains.
    """

    data: bytes = field(repr=False)
    profile_id: str = ""
    name: str = ""
    certificate_id: Optional[str] = None


@dataclass
class CertificateRequest:
    """Result of submitting a certificate signing request."""

    certificate_id: str
    serial_number: str
    content: Optional[bytes] = field(default=None, repr=False)

    @classmethod
    def from_plist(cls, data: dict[str, Any]) -> CertificateRequest:
        content = data.get("certContent")
        return cls(
            certificate_id=data.get("certificateId", data.get("certRequestId", "")),
            serial_number=data.get("serialNum", data.get("serialNumber", "")),
            content=content if isinstance(content, bytes) else None,
        )
