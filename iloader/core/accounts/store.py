"""
Persistent store of authenticated Apple ID accounts.

Account metadata and the active-account marker live in a JSON file under
the config directory. Session tokens and signing keys live in a
SecretVault (the OS keyring by default) and never touch that file.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from iloader.core.accounts.models import Account, AccountRecord
from iloader.core.accounts.vault import SecretVault, signing_key_key, token_key
from iloader.exceptions import AccountNotFoundError, PermissionDeniedError

logger = logging.getLogger(__name__)

STORE_VERSION = 1


class AccountStore:
    """
    Thread-safe account store.

    Example:
        store = AccountStore(config_dir / "accounts.json", KeyringVault())
        store.add("user@example.com", token)
        for account in store.list():
            print(account.identifier)
    """

    def __init__(self, path: Path, vault: SecretVault):
        """
        Initialize the store.

        Args:
            path: JSON metadata file.
            vault: Secret storage for tokens and keys.
        """
        self._path = Path(path)
        self._vault = vault
        self._lock = threading.RLock()
        self._records: dict[str, AccountRecord] = {}
        self._active: Optional[str] = None
        self._load()

    def _load(self) -> None:
        """Load metadata from file."""
        if not self._path.exists():
            return
        try:
            with open(self._path, "r") as f:
                data = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load accounts: {e}")
            return

        for item in data.get("accounts", []):
            record = AccountRecord.from_dict(item)
            if record.identifier:
                self._records[record.identifier] = record
        active = data.get("active")
        self._active = active if active in self._records else None
        logger.debug(f"Loaded {len(self._records)} account(s)")

    def _save(self) -> None:
        """Write metadata with write-then-rename so readers never see a partial file."""
        data: dict[str, Any] = {
            "version": STORE_VERSION,
            "active": self._active,
            "accounts": [r.to_dict() for r in self._records.values()],
        }
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=".accounts-", suffix=".tmp", dir=self._path.parent
            )
            try:
                with os.fdopen(fd, "w") as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise PermissionDeniedError("the accounts file") from e

    def add(self, identifier: str, token: bytes) -> Account:
        """
        Store (or replace) the session of an Apple ID and make it active.

        Adding the same identifier twice leaves a single entry holding
        the newest token.

        Returns:
            The stored Account.
        """
        identifier = identifier.strip()
        with self._lock:
            previous = self._records.get(identifier)
            record = AccountRecord(
                identifier=identifier,
                created_at=datetime.now().isoformat(),
                key_teams=list(previous.key_teams) if previous else [],
            )
            self._vault.set(token_key(identifier), token)
            self._records[identifier] = record
            self._active = identifier
            self._save()
        logger.info(f"Stored account {identifier}")
        return Account(identifier, token, record.created)

    def get(self, identifier: str) -> Account:
        """
        Get a stored account with its token.

        Raises:
            AccountNotFoundError: If the identifier is unknown or its
                token is missing from the vault.
        """
        identifier = identifier.strip()
        with self._lock:
            record = self._records.get(identifier)
            if record is None:
                raise AccountNotFoundError(identifier)
            token = self._vault.get(token_key(identifier))
        if token is None:
            raise AccountNotFoundError(identifier)
        return Account(identifier, token, record.created)

    def list(self) -> list[Account]:
        """All accounts whose token is still in the vault, oldest first."""
        with self._lock:
            records = sorted(self._records.values(), key=lambda r: r.created_at)
        accounts = []
        for record in records:
            token = self._vault.get(token_key(record.identifier))
            if token is None:
                logger.debug(f"Skipping {record.identifier}: token missing from vault")
                continue
            accounts.append(Account(record.identifier, token, record.created))
        return accounts

    def switch(self, identifier: str) -> Account:
        """Make a stored account the active one."""
        account = self.get(identifier)
        with self._lock:
            self._active = account.identifier
            self._save()
        logger.info(f"Switched to {account.identifier}")
        return account

    def remove(self, identifier: str) -> None:
        """
        Remove an account, purging its token and signing keys.

        Raises:
            AccountNotFoundError: If the identifier is unknown.
        """
        identifier = identifier.strip()
        with self._lock:
            record = self._records.pop(identifier, None)
            if record is None:
                raise AccountNotFoundError(identifier)
            self._vault.delete(token_key(identifier))
            for team_id in record.key_teams:
                self._vault.delete(signing_key_key(identifier, team_id))
            if self._active == identifier:
                self._active = None
            self._save()
        logger.info(f"Removed account {identifier}")

    @property
    def active(self) -> Optional[Account]:
        """The active account, if one is set and still stored."""
        with self._lock:
            identifier = self._active
        if identifier is None:
            return None
        try:
            return self.get(identifier)
        except AccountNotFoundError:
            return None

    # Signing keys

    def signing_key(self, identifier: str, team_id: str) -> Optional[bytes]:
        """PEM private key held for an account's certificate in a team."""
        return self._vault.get(signing_key_key(identifier.strip(), team_id))

    def save_signing_key(self, identifier: str, team_id: str, key_pem: bytes) -> None:
        """Keep the private key of a newly issued certificate."""
        identifier = identifier.strip()
        with self._lock:
            record = self._records.get(identifier)
            if record is None:
                raise AccountNotFoundError(identifier)
            self._vault.set(signing_key_key(identifier, team_id), key_pem)
            if team_id not in record.key_teams:
                record.key_teams.append(team_id)
                self._save()
