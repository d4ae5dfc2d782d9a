"""
Secret storage for session tokens and signing keys.

Secrets never share a file with account metadata; they go to the OS
credential store through the keyring library.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Optional, Protocol

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

from iloader.constants import KEYRING_SERVICE
from iloader.exceptions import PermissionDeniedError

logger = logging.getLogger(__name__)


class SecretVault(Protocol):
    """Byte-valued secret storage keyed by name."""

    def get(self, key: str) -> Optional[bytes]:
        ...

    def set(self, key: str, value: bytes) -> None:
        ...

    def delete(self, key: str) -> None:
        ...


class KeyringVault:
    """
    SecretVault backed by the OS keyring.

    Values are stored base64-encoded since keyring backends hold strings.

    Args:
        service: Keyring service name entries are filed under.
    """

    def __init__(self, service: str = KEYRING_SERVICE):
        self._service = service

    def get(self, key: str) -> Optional[bytes]:
        try:
            value = keyring.get_password(self._service, key)
        except KeyringError as e:
            raise PermissionDeniedError("the system keyring") from e
        if value is None:
            return None
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as e:
            raise PermissionDeniedError("the system keyring") from e

    def set(self, key: str, value: bytes) -> None:
        try:
            keyring.set_password(
                self._service, key, base64.b64encode(value).decode("ascii")
            )
        except KeyringError as e:
            raise PermissionDeniedError("the system keyring") from e

    def delete(self, key: str) -> None:
        try:
            keyring.delete_password(self._service, key)
        except PasswordDeleteError:
            logger.debug(f"No keyring entry for {key}")
        except KeyringError as e:
            raise PermissionDeniedError("the system keyring") from e


def token_key(identifier: str) -> str:
    """Vault key of an account's session token."""
    return f"token:{identifier}"


def signing_key_key(identifier: str, team_id: str) -> str:
    """Vault key of the private key behind an account's development certificate."""
    return f"signing-key:{identifier}:{team_id}"
