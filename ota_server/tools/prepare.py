"""Stage a freshly built firmware binary for OTA distribution."""

import argparse
import logging
import shutil
import sys
from pathlib import Path
from typing import List, Optional, Union

from ..config import config

logger = logging.getLogger(__name__)


class FirmwareNotFoundError(FileNotFoundError):
    """The built firmware binary does not exist."""


def prepare_firmware(source: Union[str, Path], dest_dir: Union[str, Path],
                     name: str = "firmware.bin") -> Path:
    """
    Copy the built firmware into the staging directory.

    Args:
        source: Path of the built firmware binary
        dest_dir: Staging directory, created if missing
        name: File name inside the staging directory

    Returns:
        Path of the staged copy

    Raises:
        FirmwareNotFoundError: If source does not exist
    """
    src = Path(source)
    if not src.is_file():
        raise FirmwareNotFoundError(f"Firmware not found: {src}")

    out_dir = Path(dest_dir)
    if not out_dir.exists():
        logger.info(f"Creating {out_dir}/ directory...")
        out_dir.mkdir(parents=True, exist_ok=True)

    dest = out_dir / name
    logger.info(f"Copying firmware to {dest}...")
    shutil.copyfile(src, dest)
    return dest


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Copy the built firmware into the OTA staging directory")
    ap.add_argument("--source", default=config.OTA_BUILD_ARTIFACT, help="Built firmware binary")
    ap.add_argument("--dest-dir", default=config.OTA_STAGING_DIR, help="Staging directory")
    ap.add_argument("--name", default="firmware.bin", help="File name of the staged copy")
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    logger.info("=== OTA Firmware Preparation ===")
    try:
        dest = prepare_firmware(args.source, args.dest_dir, args.name)
    except FirmwareNotFoundError as e:
        logger.error(f"Error: {e}")
        logger.error("Please build the firmware first:")
        logger.error(f"  pio run -e {config.OTA_BUILD_ENV}")
        return 1
    except OSError as e:
        logger.error(f"Error: could not stage firmware: {e}")
        return 1

    size_kb = dest.stat().st_size / 1024
    logger.info("✓ OTA firmware ready!")
    logger.info(f"  Location: {dest}")
    logger.info(f"  Size: {size_kb:.2f} KB")
    return 0


if __name__ == "__main__":
    sys.exit(main())
