"""Bump the firmware version constants in the firmware sources."""

import argparse
import logging
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from ..config import config

logger = logging.getLogger(__name__)

BUMP_TYPES = ("major", "minor")

MAJOR_RE = re.compile(r"#define FIRMWARE_VERSION_MAJOR (\d+)")
MINOR_RE = re.compile(r"#define FIRMWARE_VERSION_MINOR (\d+)")


class VersionBumpError(Exception):
    """Raised when the version cannot be bumped; no file has been written."""


@dataclass(frozen=True)
class FirmwareVersion:
    """Firmware version as declared in the sources."""
    major: int
    minor: int

    def bump(self, bump_type: str) -> "FirmwareVersion":
        if bump_type == "major":
            return FirmwareVersion(self.major + 1, 0)
        if bump_type == "minor":
            return FirmwareVersion(self.major, self.minor + 1)
        raise VersionBumpError(f'Bump type must be "major" or "minor", got "{bump_type}"')

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}"


def read_version(content: str, source: str = "<string>") -> FirmwareVersion:
    """
    Extract the version declared in a source file's content.

    Raises:
        VersionBumpError: If either define is missing
    """
    major = MAJOR_RE.search(content)
    minor = MINOR_RE.search(content)
    if not major or not minor:
        raise VersionBumpError(f"Could not find version in {source}")
    return FirmwareVersion(int(major.group(1)), int(minor.group(1)))


def apply_version(content: str, version: FirmwareVersion) -> str:
    content = MAJOR_RE.sub(f"#define FIRMWARE_VERSION_MAJOR {version.major}", content, count=1)
    return MINOR_RE.sub(f"#define FIRMWARE_VERSION_MINOR {version.minor}", content, count=1)


def bump_firmware_version(files: Sequence[Union[str, Path]], bump_type: str = "minor") -> FirmwareVersion:
    """
    Bump the version in every file in lock-step.

    All files are read and validated before any of them is written, so a
    failure leaves the sources untouched.

    Args:
        files: Source files carrying the version defines; the first one is authoritative
        bump_type: "major" or "minor"

    Returns:
        The new version

    Raises:
        VersionBumpError: On an invalid bump type, a missing file or a missing define
    """
    if bump_type not in BUMP_TYPES:
        raise VersionBumpError(f'Bump type must be "major" or "minor", got "{bump_type}"')
    if not files:
        raise VersionBumpError("No version files configured")

    contents: Dict[Path, str] = {}
    versions: Dict[Path, FirmwareVersion] = {}
    for f in files:
        path = Path(f)
        try:
            contents[path] = path.read_text(encoding="utf-8")
        except OSError as e:
            raise VersionBumpError(f"Could not read {path}: {e}") from e
        versions[path] = read_version(contents[path], str(path))

    paths = list(contents)
    current = versions[paths[0]]
    for path in paths[1:]:
        if versions[path] != current:
            logger.warning(f"{path} declares {versions[path]}, expected {current}; bringing it in line")

    new_version = current.bump(bump_type)
    logger.info(f"Bumping {bump_type} version: {current} -> {new_version}")

    for path in paths:
        path.write_text(apply_version(contents[path], new_version), encoding="utf-8")
        logger.info(f"  Updated {path}")

    return new_version


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Bump the firmware major or minor version")
    ap.add_argument("bump_type", nargs="?", default="minor", help="major or minor (default: minor)")
    ap.add_argument("--root", default=config.OTA_PROJECT_ROOT, help="Firmware project root")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    root = Path(args.root)
    try:
        new_version = bump_firmware_version([root / f for f in config.version_files], args.bump_type)
    except VersionBumpError as e:
        logger.error(f"Error: {e}")
        return 1

    logger.info("Version bump complete!")
    logger.info(f"New version: {new_version}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
