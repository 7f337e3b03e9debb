"""Pytest configuration and fixtures for OTA server tests."""

import threading
from pathlib import Path
from typing import Callable, Iterator, List

import pytest

from ota_server.artifact import Artifact
from ota_server.server import ArtifactServer, create_app
from ota_server.tracker import DownloadTracker

ONE_MIB = 1024 * 1024
# Larger than loopback socket buffers, so an unread download stays in flight
LARGE_SIZE = 32 * ONE_MIB


def make_payload(size: int) -> bytes:
    """Deterministic, non-repeating-per-chunk firmware bytes."""
    block = bytes(range(256))
    data = (block * (size // 256 + 1))[:size]
    return data


@pytest.fixture
def firmware_bytes() -> bytes:
    """Contents of a 1 MiB firmware image."""
    return make_payload(ONE_MIB)


@pytest.fixture
def firmware_file(tmp_path: Path, firmware_bytes: bytes) -> Path:
    """A 1 MiB firmware image on disk."""
    path = tmp_path / "firmware.bin"
    path.write_bytes(firmware_bytes)
    return path


@pytest.fixture
def large_firmware_file(tmp_path: Path) -> Path:
    """A firmware image too large to fit in the socket buffers."""
    path = tmp_path / "large.bin"
    path.write_bytes(make_payload(LARGE_SIZE))
    return path


@pytest.fixture
def missing_firmware(tmp_path: Path) -> Path:
    """Path where no firmware has been built yet."""
    return tmp_path / "build" / "firmware.bin"


@pytest.fixture
def tracker() -> DownloadTracker:
    return DownloadTracker()


@pytest.fixture
def app_factory(tracker: DownloadTracker) -> Callable:
    """Build a Flask app serving the given path with a shared tracker."""
    def factory(path: Path, chunk_size: int = 64 * 1024):
        app = create_app(Artifact(path), tracker, route="firmware.bin", chunk_size=chunk_size)
        app.config["TESTING"] = True
        return app
    return factory


@pytest.fixture
def client(app_factory, firmware_file):
    """Flask test client for a present firmware image."""
    return app_factory(firmware_file).test_client()


@pytest.fixture
def server_factory() -> Iterator[Callable[[Path], ArtifactServer]]:
    """Start real threaded servers on ephemeral loopback ports."""
    started: List[tuple] = []

    def factory(path: Path, chunk_size: int = 64 * 1024) -> ArtifactServer:
        server = ArtifactServer(host="127.0.0.1", port=0, artifact_path=path,
                                route="firmware.bin", chunk_size=chunk_size)
        server.bind()
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        started.append((server, thread))
        return server

    yield factory

    for server, thread in started:
        server.shutdown()
        thread.join(timeout=5)


@pytest.fixture
def url_for() -> Callable[..., str]:
    """Build a URL on a running server."""
    def build(server: ArtifactServer, path: str = "/firmware.bin") -> str:
        return f"http://127.0.0.1:{server.port}{path}"
    return build
