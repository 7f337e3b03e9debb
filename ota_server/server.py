"""HTTP server that hands the firmware artifact out to devices."""

import errno
import logging
import socket
import threading
from pathlib import Path
from typing import Optional, Union

from flask import Flask, Response, request
from werkzeug.serving import BaseWSGIServer, WSGIRequestHandler, make_server

from .artifact import Artifact, ArtifactStream
from .config import config
from .tracker import ConnectionId, DownloadTracker

logger = logging.getLogger(__name__)

LISTEN_BACKLOG = 128

# WSGI environ key under which the artifact route stores its body stream
STREAM_ENVIRON_KEY = "ota_server.stream"

# Set by DownloadRequestHandler, which reports early closes itself once the
# socket error that caused them is known
DEFER_ABORT_KEY = "ota_server.defer_abort"


class PortInUseError(OSError):
    """The configured port is already bound by another process."""

    def __init__(self, host: str, port: int):
        super().__init__(errno.EADDRINUSE, f"Port {port} is already in use on {host}")
        self.host = host
        self.port = port


def _plain_text(body: str, status: int) -> Response:
    return Response(body, status=status, mimetype="text/plain")


def create_app(artifact: Artifact, tracker: DownloadTracker,
               route: str = "firmware.bin", chunk_size: int = 65536) -> Flask:
    """
    Build the Flask application serving a single artifact route.

    Args:
        artifact: The file to serve, re-checked on every request
        tracker: Download bookkeeping owned by the caller
        route: Route name the artifact is served under
        chunk_size: Bytes read from disk per body chunk

    Returns:
        Configured Flask application
    """
    app = Flask(__name__)
    route_path = "/" + route.lstrip("/")

    @app.get(route_path)
    def firmware():
        try:
            opened = artifact.open()
        except OSError as e:
            logger.warning(f"⚠️  Firmware not found: {artifact.path} ({e.strerror or e})")
            return _plain_text("Firmware not found", 404)

        headers = {"Content-Length": str(opened.size)}

        if request.method == "HEAD":
            opened.close()
            return Response(iter(()), status=200, headers=headers,
                            mimetype="application/octet-stream", direct_passthrough=True)

        conn_id = ConnectionId(request.remote_addr or "unknown",
                               int(request.environ.get("REMOTE_PORT") or 0))
        try:
            serial, active = tracker.begin(conn_id)
        except ValueError as e:
            opened.close()
            logger.error(f"Refusing duplicate download: {e}")
            return _plain_text("Download already in progress", 409)

        logger.info(f"📥 [{serial}] Download started: {conn_id} ({opened.size} bytes), "
                    f"active connections: {active}")

        def finished(error: Optional[BaseException], sent: int) -> None:
            remaining = tracker.end(conn_id, success=error is None)
            if error is None:
                logger.info(f"✅ [{serial}] Download complete: {conn_id} ({sent} bytes), "
                            f"active connections: {remaining}")
            else:
                logger.warning(f"❌ [{serial}] Download failed: {conn_id} - {error}, "
                               f"active connections: {remaining}")

        stream = ArtifactStream(opened, chunk_size, finished,
                                defer_abort=bool(request.environ.get(DEFER_ABORT_KEY)))
        request.environ[STREAM_ENVIRON_KEY] = stream
        return Response(stream, status=200, headers=headers,
                        mimetype="application/octet-stream", direct_passthrough=True)

    @app.errorhandler(404)
    def not_found(e):
        return _plain_text("Not Found", 404)

    return app


class DownloadRequestHandler(WSGIRequestHandler):
    """
    Request handler that reports dropped client connections.

    Werkzeug closes the response body before it calls connection_dropped(),
    so the stream is told to hold its failure report until the request is
    over. By then the socket error, if any, has been attached with abort().
    """

    def make_environ(self):
        environ = super().make_environ()
        environ[DEFER_ABORT_KEY] = True
        self._download_environ = environ
        return environ

    def run_wsgi(self):
        self._download_environ = None
        try:
            super().run_wsgi()
        finally:
            environ = self._download_environ
            stream = environ.get(STREAM_ENVIRON_KEY) if environ else None
            if stream is not None:
                stream.settle()

    def connection_dropped(self, error, environ=None):
        stream = environ.get(STREAM_ENVIRON_KEY) if environ else None
        if stream is not None:
            stream.abort(error)
        logger.debug(f"Connection dropped by {self.client_address[0]}:{self.client_address[1]}: {error!r}")


def bind_listener(host: str, port: int) -> socket.socket:
    """
    Create a listening TCP socket.

    Raises:
        PortInUseError: If another process already owns the port
        OSError: For any other bind failure
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError as e:
        sock.close()
        if e.errno == errno.EADDRINUSE:
            raise PortInUseError(host, port) from e
        raise
    sock.listen(LISTEN_BACKLOG)
    return sock


class ArtifactServer:
    """Threaded HTTP listener serving one firmware artifact."""

    def __init__(self, host: Optional[str] = None, port: Optional[int] = None,
                 artifact_path: Optional[Union[str, Path]] = None,
                 route: Optional[str] = None, chunk_size: Optional[int] = None):
        """Initialize the server. Unset arguments fall back to the global config."""
        self.host = host or config.OTA_HOST
        self.port = config.OTA_PORT if port is None else port
        self.route = route or config.OTA_ROUTE
        self.chunk_size = chunk_size or config.OTA_CHUNK_SIZE
        self.artifact = Artifact(artifact_path or config.OTA_ARTIFACT_PATH)
        self.tracker = DownloadTracker()
        self.app = create_app(self.artifact, self.tracker, self.route, self.chunk_size)
        self._server: Optional[BaseWSGIServer] = None
        self._serving = threading.Event()

    @property
    def route_path(self) -> str:
        return "/" + self.route.lstrip("/")

    @property
    def is_bound(self) -> bool:
        return self._server is not None

    def bind(self) -> None:
        """
        Bind the listening socket without serving yet.

        Raises:
            PortInUseError: If the port is taken
        """
        sock = bind_listener(self.host, self.port)
        try:
            self._server = make_server(
                self.host,
                self.port,
                self.app,
                threaded=True,
                request_handler=DownloadRequestHandler,
                fd=sock.fileno(),
            )
        finally:
            # make_server works on a duplicate of the descriptor
            sock.close()
        self._server.daemon_threads = True
        self.port = self._server.port
        logger.info(f"Listening on {self.host}:{self.port}")

    def serve_forever(self) -> None:
        """Serve requests until shutdown() is called from another thread."""
        if self._server is None:
            self.bind()
        self._serving.set()
        try:
            self._server.serve_forever()
        finally:
            self._serving.clear()
            self._server.server_close()

    def shutdown(self) -> None:
        """Stop accepting connections. Must not be called from the serving thread."""
        if self._server is None:
            return
        if self._serving.is_set():
            self._server.shutdown()
        else:
            self._server.server_close()

    def request_shutdown(self) -> None:
        """Trigger shutdown from a signal handler running on the serving thread."""
        threading.Thread(target=self.shutdown, daemon=True).start()
