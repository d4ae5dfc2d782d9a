"""
Provisioning profile decoding.

A .mobileprovision is a CMS envelope around an XML property list. The
plist is located by its XML prologue and closing tag, so no CMS parsing
is needed to read it.
"""

from __future__ import annotations

import plistlib
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional
from xml.parsers.expat import ExpatError

from iloader.exceptions import ProfileGenerationFailedError

_PLIST_RE = re.compile(rb"<\?xml version=.*?</plist>", re.DOTALL)


@dataclass
class ProfileInfo:
    """
    What a provisioning profile grants.

    Attributes:
        uuid: Profile UUID.
        name: Profile name.
        team_id: Team identifier.
        app_id_name: Name of the App ID the profile is for.
        entitlements: Entitlements the app may be signed with.
        expiration: Expiration date.
        developer_certificates: DER certificates the profile allows.
    """

    uuid: str
    name: str
    team_id: Optional[str]
    app_id_name: str = ""
    entitlements: dict[str, Any] = field(default_factory=dict)
    expiration: Optional[datetime] = None
    developer_certificates: list[bytes] = field(default_factory=list, repr=False)

    @property
    def application_identifier(self) -> Optional[str]:
        value = self.entitlements.get("application-identifier")
        return value if isinstance(value, str) else None

    @property
    def bundle_id(self) -> Optional[str]:
        """Bundle identifier from application-identifier, without the team prefix."""
        app_id = self.application_identifier
        if not app_id or "." not in app_id:
            return None
        return app_id.split(".", 1)[1]

    def allows_certificate(self, certificate_der: bytes) -> bool:
        return certificate_der in self.developer_certificates


def profile_plist(data: bytes) -> dict[str, Any]:
    """
    Extract the property list embedded in a profile.

    Raises:
        ProfileGenerationFailedError: If no property list can be read.
    """
    match = _PLIST_RE.search(data)
    if match is None:
        raise ProfileGenerationFailedError("profile contains no property list")
    try:
        plist = plistlib.loads(match.group(0))
    except (ValueError, ExpatError) as e:
        raise ProfileGenerationFailedError("profile property list is invalid") from e
    if not isinstance(plist, dict):
        raise ProfileGenerationFailedError("profile property list is not a dictionary")
    return plist


def parse_profile(data: bytes) -> ProfileInfo:
    """Decode the fields of a provisioning profile used for signing."""
    plist = profile_plist(data)

    entitlements = plist.get("Entitlements")
    if not isinstance(entitlements, dict):
        entitlements = {}

    team_id = entitlements.get("com.apple.developer.team-identifier")
    if not team_id:
        teams = plist.get("TeamIdentifier")
        if isinstance(teams, list) and teams:
            team_id = teams[0]
    if not team_id:
        app_id = entitlements.get("application-identifier")
        if isinstance(app_id, str) and "." in app_id:
            team_id = app_id.split(".", 1)[0]

    expiration = plist.get("ExpirationDate")
    certificates = plist.get("DeveloperCertificates")

    return ProfileInfo(
        uuid=plist.get("UUID", ""),
        name=plist.get("Name", ""),
        team_id=team_id or None,
        app_id_name=plist.get("AppIDName", ""),
        entitlements=entitlements,
        expiration=expiration if isinstance(expiration, datetime) else None,
        developer_certificates=[
            bytes(c) for c in certificates if isinstance(c, (bytes, bytearray))
        ] if isinstance(certificates, list) else [],
    )


def signing_entitlements(info: ProfileInfo, bundle_id: Optional[str] = None) -> dict[str, Any]:
    """
    Entitlements to embed for a bundle.

    Wildcard application identifiers in the profile are narrowed to the
    bundle identifier being signed.
    """
    entitlements = dict(info.entitlements)
    app_id = info.application_identifier
    if bundle_id and info.team_id and app_id and app_id.endswith("*"):
        entitlements["application-identifier"] = f"{info.team_id}.{bundle_id}"
    return entitlements
