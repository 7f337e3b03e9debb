"""Firmware release helpers run before the OTA server."""

from .prepare import FirmwareNotFoundError, prepare_firmware
from .bump_version import FirmwareVersion, VersionBumpError, bump_firmware_version

__all__ = [
    "FirmwareNotFoundError",
    "prepare_firmware",
    "FirmwareVersion",
    "VersionBumpError",
    "bump_firmware_version"
]
