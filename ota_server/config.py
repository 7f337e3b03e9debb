"""Configuration module for the OTA firmware server and tools."""

import os
from typing import List
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Configuration class for the OTA firmware server and tools."""

    # Listener configuration
    OTA_HOST: str = os.getenv("OTA_HOST", "0.0.0.0")
    OTA_PORT: int = int(os.getenv("OTA_PORT", "3000"))

    # Served artifact
    OTA_ARTIFACT_PATH: str = os.getenv("OTA_ARTIFACT_PATH", ".pio/build/pixel_s3/firmware.bin")
    OTA_ROUTE: str = os.getenv("OTA_ROUTE", "firmware.bin")
    OTA_CHUNK_SIZE: int = int(os.getenv("OTA_CHUNK_SIZE", "65536"))

    # Address prefix of the firmware master's access point
    OTA_PREFERRED_PREFIX: str = os.getenv("OTA_PREFERRED_PREFIX", "192.168.4.")

    # Seconds to wait for in-flight downloads on shutdown
    OTA_SHUTDOWN_GRACE: float = float(os.getenv("OTA_SHUTDOWN_GRACE", "0"))

    # Firmware preparation
    OTA_BUILD_ENV: str = os.getenv("OTA_BUILD_ENV", "pixel_s3")
    OTA_BUILD_ARTIFACT: str = os.getenv("OTA_BUILD_ARTIFACT", ".pio/build/pixel_s3/firmware.bin")
    OTA_STAGING_DIR: str = os.getenv("OTA_STAGING_DIR", "data")

    # Version bumping
    OTA_PROJECT_ROOT: str = os.getenv("OTA_PROJECT_ROOT", ".")
    OTA_VERSION_FILES: str = os.getenv("OTA_VERSION_FILES", "src/main.cpp,src/master.cpp")

    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")

    @property
    def route_path(self) -> str:
        """Get the URL path the artifact is served on."""
        return "/" + self.OTA_ROUTE.lstrip("/")

    @property
    def version_files(self) -> List[str]:
        """Get the list of source files carrying the firmware version."""
        return [f.strip() for f in self.OTA_VERSION_FILES.split(",") if f.strip()]


# Global config instance
config = Config()
