"""
iloader - Apple ID sideloading toolkit.

This package signs iOS apps with a free or paid Apple developer account:
it signs in to the Apple ID, manages certificates, App IDs and
provisioning profiles, re-signs IPAs and installs them on a device.
"""

__version__ = "0.1.0"
__author__ = "iloader Contributors"

from iloader.core.service import IloaderService

__all__ = [
    "IloaderService",
    "__version__",
]
