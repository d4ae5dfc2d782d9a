"""
Device installation.

Example:
    from iloader.core.device import MobileDeviceInstaller, list_devices

    devices = list_devices()
    with MobileDeviceInstaller(devices[0].udid) as installer:
        installer.install(Path("App-signed.ipa"))
"""

from iloader.core.device.installer import (
    DeviceInfo,
    DeviceInstaller,
    InstallerFactory,
    MobileDeviceInstaller,
    list_devices,
)

__all__ = [
    "DeviceInfo",
    "DeviceInstaller",
    "InstallerFactory",
    "MobileDeviceInstaller",
    "list_devices",
]
