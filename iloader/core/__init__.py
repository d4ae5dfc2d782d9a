"""
iloader core library modules.

This package contains Apple ID authentication, developer services,
IPA signing and the operations that chain them together.
"""

from iloader.core.service import IloaderService

__all__ = [
    "IloaderService",
]
