"""
Data models for Anisette device-attestation headers.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Optional


# Dataclass field name -> HTTP header name
HEADER_NAMES = {
    "machine_id": "X-Apple-I-MD-M",
    "one_time_password": "X-Apple-I-MD",
    "local_user_id": "X-Apple-I-MD-LU",
    "routing_info": "X-Apple-I-MD-RINFO",
    "device_id": "X-Mme-Device-Id",
    "serial_number": "X-Apple-I-SRL-NO",
    "client_info": "X-MMe-Client-Info",
    "client_time": "X-Apple-I-Client-Time",
    "locale": "X-Apple-Locale",
    "timezone": "X-Apple-I-TimeZone",
}


@dataclass(frozen=True)
class AnisetteHeaders:
    """
    The device-attestation header set Apple requires on every
    authenticated request.

    Attributes:
        machine_id: X-Apple-I-MD-M
        one_time_password: X-Apple-I-MD (rotates, never log it)
        local_user_id: X-Apple-I-MD-LU
        routing_info: X-Apple-I-MD-RINFO
        device_id: X-Mme-Device-Id
        serial_number: X-Apple-I-SRL-NO
        client_info: X-MMe-Client-Info
        client_time: X-Apple-I-Client-Time
        locale: X-Apple-Locale
        timezone: X-Apple-I-TimeZone
    """

    machine_id: str
    one_time_password: str
    local_user_id: str
    routing_info: str
    device_id: str
    serial_number: str
    client_info: str
    client_time: str
    locale: str
    timezone: str

    def as_request_headers(self) -> dict[str, str]:
        """Render as HTTP request headers."""
        return {header: getattr(self, name) for name, header in HEADER_NAMES.items()}

    @classmethod
    def from_mapping(cls, data: Any) -> Optional[AnisetteHeaders]:
        """
        Build headers from a decoded JSON body.

        Accepts either the named-field structure (``machine_id``, ...) or a
        flat map keyed by header name. Returns None when neither form
        carries all ten values as strings.
        """
        if not isinstance(data, dict):
            return None

        names = [f.name for f in fields(cls)]
        if all(isinstance(data.get(name), str) for name in names):
            return cls(**{name: data[name] for name in names})

        if all(isinstance(data.get(header), str) for header in HEADER_NAMES.values()):
            return cls(**{name: data[header] for name, header in HEADER_NAMES.items()})

        return None
