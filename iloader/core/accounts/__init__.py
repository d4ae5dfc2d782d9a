"""
Stored Apple ID accounts.

Example:
    from iloader.core.accounts import AccountStore, KeyringVault

    store = AccountStore(Path("~/.iloader/accounts.json").expanduser(), KeyringVault())
    store.add("user@example.com", token)
"""

from iloader.core.accounts.models import Account, AccountRecord
from iloader.core.accounts.store import AccountStore
from iloader.core.accounts.vault import KeyringVault, SecretVault

__all__ = [
    "Account",
    "AccountRecord",
    "AccountStore",
    "KeyringVault",
    "SecretVault",
]
