"""Main entry point for the OTA firmware server."""

import argparse
import logging
import signal
import sys
from typing import List, Optional

from .config import config
from .netinfo import build_candidate_urls, list_ipv4_interfaces
from .server import ArtifactServer, PortInUseError

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    ap = argparse.ArgumentParser(description="Serve a firmware binary to devices for OTA updates")
    ap.add_argument("--host", default=config.OTA_HOST, help="Listen address")
    ap.add_argument("--port", type=int, default=config.OTA_PORT, help="Listen port")
    ap.add_argument("--artifact", default=config.OTA_ARTIFACT_PATH, help="Path of the firmware binary")
    ap.add_argument("--route", default=config.OTA_ROUTE, help="Route name the binary is served under")
    return ap.parse_args(argv)


def announce(server: ArtifactServer) -> None:
    """Log the startup banner: artifact status and candidate URLs."""
    logger.info("🚀 OTA server running")

    size = server.artifact.size()
    if size is None:
        logger.warning(f"⚠️  WARNING: Firmware not found! Expected: {server.artifact.path}")
        logger.warning("   Run ota-prepare or build the firmware first; it will be served once it appears")
    else:
        logger.info(f"✅ Firmware ready: {size / 1024:.1f} KB ({server.artifact.path})")

    urls = build_candidate_urls(list_ipv4_interfaces(), server.port, server.route,
                                config.OTA_PREFERRED_PREFIX)
    if not urls:
        logger.warning("   No network interfaces found!")
        return

    logger.info("📡 Server URLs:")
    for candidate in urls:
        hint = "  <-- Use this one!" if candidate.preferred else ""
        logger.info(f"   {candidate.url} ({candidate.interface}){hint}")
    logger.info("Waiting for device connections...")


def setup_signal_handlers(server: ArtifactServer) -> None:
    """Set up signal handlers for graceful shutdown."""
    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        server.request_shutdown()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)


def main(argv: Optional[List[str]] = None) -> int:
    """Run the server until interrupted. Returns the process exit status."""
    args = parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    server = ArtifactServer(host=args.host, port=args.port,
                            artifact_path=args.artifact, route=args.route)
    try:
        server.bind()
    except PortInUseError as e:
        logger.error(f"❌ Port {e.port} is already in use!")
        logger.error(f"   Find the owning process with: lsof -i :{e.port}")
        return 1
    except OSError as e:
        logger.error(f"❌ Could not listen on {args.host}:{args.port}: {e}")
        return 1

    announce(server)
    setup_signal_handlers(server)

    server.serve_forever()

    logger.info("Shutting down OTA server...")
    if config.OTA_SHUTDOWN_GRACE > 0 and not server.tracker.wait_idle(config.OTA_SHUTDOWN_GRACE):
        logger.warning(f"Abandoning {server.tracker.active_count} download(s) still in flight")

    stats = server.tracker.snapshot()
    logger.info(f"Total downloads served: {stats.total_served}")
    logger.info(f"   completed: {stats.completed}, failed: {stats.failed}, peak concurrent: {stats.peak_active}")
    logger.info("Server stopped.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
