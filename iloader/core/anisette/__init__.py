"""
Anisette device-attestation headers.

Example:
    from iloader.core.anisette import AnisetteProvider

    provider = AnisetteProvider()
    headers = provider.fetch("ani.sidestore.io")
"""

from iloader.core.anisette.models import AnisetteHeaders, HEADER_NAMES
from iloader.core.anisette.provider import AnisetteProvider, normalize_server_url

__all__ = [
    "AnisetteHeaders",
    "AnisetteProvider",
    "HEADER_NAMES",
    "normalize_server_url",
]
