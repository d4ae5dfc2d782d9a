"""
Installing signed apps onto a connected device.

Device discovery and pairing are provided by the platform; this module
only lists devices that usbmuxd already knows about and pushes a signed
IPA through the installation proxy service.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from pymobiledevice3.exceptions import PyMobileDevice3Exception
from pymobiledevice3.lockdown import LockdownClient, create_using_usbmux
from pymobiledevice3.services.installation_proxy import InstallationProxyService
from pymobiledevice3.usbmux import list_devices as usbmux_list_devices

from iloader.exceptions import DeviceNotFoundError, InstallError

logger = logging.getLogger(__name__)

InstallProgressCallback = Callable[[int], None]


@dataclass(frozen=True)
class DeviceInfo:
    """
    A device reachable through usbmuxd.

    Attributes:
        udid: Device UDID.
        name: User-assigned device name.
        connection_type: "USB" or "Network", as reported by usbmuxd.
    """

    udid: str
    name: str
    connection_type: str = "USB"


class DeviceInstaller(Protocol):
    """Something that can install a signed IPA onto a device."""

    def install(
        self,
        ipa_path: Path,
        udid: Optional[str] = None,
        progress: Optional[InstallProgressCallback] = None,
    ) -> None:
        ...

    def close(self) -> None:
        ...


InstallerFactory = Callable[[Optional[str]], DeviceInstaller]


def list_devices() -> list[DeviceInfo]:
    """
    List devices currently known to usbmuxd.

    Devices that refuse a lockdown connection (not paired, locked) are
    listed with their UDID as name.
    """
    try:
        mux_devices = usbmux_list_devices()
    except (PyMobileDevice3Exception, OSError) as e:
        logger.debug(f"usbmuxd not available: {e}")
        return []

    devices = []
    for mux_device in mux_devices:
        udid = mux_device.serial
        name = udid
        try:
            lockdown = create_using_usbmux(serial=udid)
            name = lockdown.all_values.get("DeviceName", udid)
        except (PyMobileDevice3Exception, OSError) as e:
            logger.debug(f"Could not query {udid}: {e}")
        devices.append(DeviceInfo(udid, name, mux_device.connection_type))

    logger.debug(f"Found {len(devices)} device(s)")
    return devices


class MobileDeviceInstaller:
    """
    Installs IPAs over usbmuxd with the installation proxy.

    Example:
        with MobileDeviceInstaller("device-udid") as installer:
            installer.install(Path("App-signed.ipa"))
    """

    def __init__(self, udid: Optional[str] = None):
        """
        Initialize the installer.

        Args:
            udid: Device UDID. If None, uses the first connected device.
        """
        self._udid = udid
        self._lockdown: Optional[LockdownClient] = None
        self._installation_proxy: Optional[InstallationProxyService] = None

    def _ensure_connected(self, udid: Optional[str]) -> InstallationProxyService:
        if udid is not None and udid != self._udid:
            self.close()
            self._udid = udid

        if self._installation_proxy is None:
            try:
                self._lockdown = create_using_usbmux(serial=self._udid)
                self._installation_proxy = InstallationProxyService(lockdown=self._lockdown)
                logger.debug("Installation proxy connection established")
            except (PyMobileDevice3Exception, OSError) as e:
                raise DeviceNotFoundError(self._udid or "first available") from e

        return self._installation_proxy

    @property
    def udid(self) -> Optional[str]:
        """UDID of the connected device, once connected."""
        if self._lockdown is not None:
            return self._lockdown.udid
        return self._udid

    def install(
        self,
        ipa_path: Path,
        udid: Optional[str] = None,
        progress: Optional[InstallProgressCallback] = None,
    ) -> None:
        """
        Install a signed IPA, replacing any installed app with the same
        bundle identifier.

        Raises:
            DeviceNotFoundError: If no device can be reached.
            InstallError: If the device rejects the app.
        """
        proxy = self._ensure_connected(udid)

        def handler(completion, *args):
            if progress is not None:
                progress(int(completion))

        logger.info(f"Installing {Path(ipa_path).name} on {self.udid}")
        try:
            proxy.install_from_local(Path(ipa_path), handler=handler)
        except (PyMobileDevice3Exception, OSError) as e:
            raise InstallError(str(e) or type(e).__name__) from e
        logger.info("Installation complete")

    def close(self) -> None:
        """Close connections."""
        if self._installation_proxy is not None:
            try:
                self._installation_proxy.close()
            except (PyMobileDevice3Exception, OSError) as e:
                logger.debug(f"Error closing installation proxy: {e}")
            self._installation_proxy = None
            self._lockdown = None

    def __enter__(self) -> MobileDeviceInstaller:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
