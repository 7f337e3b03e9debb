"""End-to-end tests against a real threaded listener."""

import logging
import os
import signal
import socket
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
import requests

from ota_server import main as main_module
from ota_server.main import main
from ota_server.server import ArtifactServer, PortInUseError, bind_listener


class TestLiveServer:
    """Test cases for downloads over real sockets."""

    def test_single_download(self, server_factory, url_for, firmware_file, firmware_bytes):
        server = server_factory(firmware_file)

        response = requests.get(url_for(server), timeout=10)

        assert response.status_code == 200
        assert response.headers["Content-Type"] == "application/octet-stream"
        assert response.headers["Content-Length"] == str(len(firmware_bytes))
        assert response.headers["Connection"] == "close"
        assert response.content == firmware_bytes

        assert server.tracker.wait_idle(timeout=5)
        stats = server.tracker.snapshot()
        assert stats.total_served == 1
        assert stats.active == 0

    def test_missing_firmware(self, server_factory, url_for, missing_firmware):
        server = server_factory(missing_firmware)

        response = requests.get(url_for(server), timeout=10)

        assert response.status_code == 404
        assert response.text == "Firmware not found"
        assert server.tracker.total_served == 0

    def test_other_path(self, server_factory, url_for, firmware_file):
        server = server_factory(firmware_file)

        response = requests.get(url_for(server, "/index.html"), timeout=10)

        assert response.status_code == 404
        assert response.text == "Not Found"
        assert server.tracker.total_served == 0

    def test_two_concurrent_downloads(self, server_factory, url_for, large_firmware_file):
        """Two in-flight downloads are tracked separately and both complete."""
        server = server_factory(large_firmware_file)
        expected = large_firmware_file.read_bytes()

        first = requests.get(url_for(server), stream=True, timeout=30)
        second = requests.get(url_for(server), stream=True, timeout=30)
        try:
            assert server.tracker.active_count == 2
            assert first.content == expected
            assert second.content == expected
        finally:
            first.close()
            second.close()

        assert server.tracker.wait_idle(timeout=10)
        stats = server.tracker.snapshot()
        assert stats.total_served == 2
        assert stats.peak_active == 2
        assert stats.completed == 2

    def test_five_concurrent_downloads(self, server_factory, url_for, firmware_file, firmware_bytes):
        server = server_factory(firmware_file)

        with ThreadPoolExecutor(max_workers=5) as pool:
            bodies = list(pool.map(lambda _: requests.get(url_for(server), timeout=30).content, range(5)))

        assert all(body == firmware_bytes for body in bodies)
        assert server.tracker.wait_idle(timeout=10)
        assert server.tracker.snapshot().completed == 5

    def test_stalled_client_does_not_block_others(self, server_factory, url_for, large_firmware_file):
        server = server_factory(large_firmware_file)
        expected = large_firmware_file.read_bytes()

        stalled = requests.get(url_for(server), stream=True, timeout=30)
        try:
            other = requests.get(url_for(server), timeout=30)
            assert other.content == expected
            # The stalled download is still in flight
            assert server.tracker.active_count >= 1
            assert server.tracker.total_served == 2
        finally:
            stalled.close()

    def test_client_disconnect_releases_record(self, server_factory, url_for, large_firmware_file):
        server = server_factory(large_firmware_file)

        response = requests.get(url_for(server), stream=True, timeout=30)
        assert response.raw.read(4096)
        response.close()

        assert server.tracker.wait_idle(timeout=10)
        stats = server.tracker.snapshot()
        assert stats.total_served == 1
        assert stats.failed == 1
        assert stats.active == 0

    def test_disconnect_logs_socket_error(self, server_factory, url_for, large_firmware_file, caplog):
        """The failure line names the socket error, not just the early close."""
        caplog.set_level(logging.INFO, logger="ota_server.server")
        server = server_factory(large_firmware_file)

        response = requests.get(url_for(server), stream=True, timeout=30)
        assert response.raw.read(4096)
        response.close()

        assert server.tracker.wait_idle(timeout=10)
        deadline = time.monotonic() + 5
        failures = []
        while not failures and time.monotonic() < deadline:
            failures = [r.getMessage() for r in caplog.records if "Download failed" in r.getMessage()]
            time.sleep(0.05)

        assert len(failures) == 1
        assert "[Errno" in failures[0]
        assert "client disconnected after" not in failures[0]

    def test_request_shutdown_stops_serving_thread(self, firmware_file):
        server = ArtifactServer(host="127.0.0.1", port=0, artifact_path=firmware_file)
        server.bind()
        port = server.port
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        assert requests.get(f"http://127.0.0.1:{port}/firmware.bin", timeout=10).status_code == 200

        server.request_shutdown()
        thread.join(timeout=5)

        assert not thread.is_alive()
        with pytest.raises(requests.ConnectionError):
            requests.get(f"http://127.0.0.1:{port}/firmware.bin", timeout=2)

    def test_shutdown_stops_accepting(self, firmware_file):
        server = ArtifactServer(host="127.0.0.1", port=0, artifact_path=firmware_file)
        server.bind()
        port = server.port

        server.shutdown()

        with pytest.raises(requests.ConnectionError):
            requests.get(f"http://127.0.0.1:{port}/firmware.bin", timeout=2)


class TestBind:
    """Test cases for listener binding."""

    @pytest.fixture
    def occupied_port(self):
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.bind(("127.0.0.1", 0))
        sock.listen(1)
        yield sock.getsockname()[1]
        sock.close()

    def test_port_in_use_raises(self, occupied_port):
        with pytest.raises(PortInUseError) as exc_info:
            bind_listener("127.0.0.1", occupied_port)

        assert exc_info.value.port == occupied_port

    def test_server_bind_port_in_use(self, occupied_port, firmware_file):
        server = ArtifactServer(host="127.0.0.1", port=occupied_port, artifact_path=firmware_file)

        with pytest.raises(PortInUseError):
            server.bind()
        assert not server.is_bound

    def test_main_exits_non_zero_on_port_conflict(self, occupied_port, firmware_file):
        status = main(["--host", "127.0.0.1", "--port", str(occupied_port), "--artifact", str(firmware_file)])

        assert status == 1

    def test_ephemeral_port_recorded(self, firmware_file):
        server = ArtifactServer(host="127.0.0.1", port=0, artifact_path=firmware_file)
        server.bind()
        try:
            assert server.port != 0
        finally:
            server.shutdown()


@pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX signal delivery")
class TestMainLifecycle:
    """Test cases for running main() until a signal arrives."""

    def test_sigint_stops_server_and_returns_zero(self, firmware_file, firmware_bytes, monkeypatch, caplog):
        caplog.set_level(logging.INFO)
        result = {}

        def client_then_interrupt(server):
            def run():
                try:
                    response = requests.get(f"http://127.0.0.1:{server.port}/firmware.bin", timeout=10)
                    result["body"] = response.content
                    server.tracker.wait_idle(timeout=5)
                finally:
                    os.kill(os.getpid(), signal.SIGINT)
            threading.Thread(target=run, daemon=True).start()

        monkeypatch.setattr(main_module, "announce", client_then_interrupt)
        saved = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
        try:
            status = main(["--host", "127.0.0.1", "--port", "0", "--artifact", str(firmware_file)])
        finally:
            for sig, handler in saved.items():
                signal.signal(sig, handler)

        assert status == 0
        assert result["body"] == firmware_bytes
        assert "Total downloads served: 1" in caplog.text
        assert "completed: 1, failed: 0" in caplog.text
        assert "Server stopped." in caplog.text
