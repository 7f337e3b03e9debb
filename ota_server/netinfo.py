"""Discovery of the host's reachable IPv4 addresses for the startup banner."""

import ipaddress
import logging
import socket
import struct
import subprocess
from dataclasses import dataclass
from typing import List

try:
    import fcntl
except ImportError:  # not available on Windows
    fcntl = None

logger = logging.getLogger(__name__)

SIOCGIFADDR = 0x8915
IP_COMMAND = ["ip", "-4", "-o", "addr", "show"]


@dataclass(frozen=True)
class InterfaceAddress:
    """One IPv4 address bound to a named network interface."""
    name: str
    address: str


@dataclass(frozen=True)
class CandidateUrl:
    """A URL devices could use to reach the artifact."""
    url: str
    interface: str
    preferred: bool


def is_usable_ipv4(address: str) -> bool:
    """Check that address is an IPv4 address other than loopback or unspecified."""
    try:
        ip = ipaddress.IPv4Address(address)
    except (ipaddress.AddressValueError, ValueError):
        return False
    return not (ip.is_loopback or ip.is_unspecified)


def parse_ip_addr_output(output: str) -> List[InterfaceAddress]:
    """
    Parse `ip -4 -o addr show` output.

    Each line carries one address, so secondary addresses and labelled
    aliases (such as `wlan0:ap`) are listed alongside the primary one. The
    label is used as the name when present.
    """
    found = []
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 4 or "inet" not in parts:
            continue
        idx = parts.index("inet")
        if idx + 1 >= len(parts):
            continue
        name = parts[1].split("@")[0]
        for token in parts[idx + 2:]:
            if token.endswith("\\") and len(token) > 1:
                name = token[:-1]
                break
        found.append(InterfaceAddress(name, parts[idx + 1].split("/")[0]))
    return found


def _interfaces_from_ip_command() -> List[InterfaceAddress]:
    """List every IPv4 address with iproute2 (Linux)."""
    try:
        result = subprocess.run(IP_COMMAND, capture_output=True, text=True, timeout=5, check=True)
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug(f"ip command unavailable: {e}")
        return []
    return parse_ip_addr_output(result.stdout)


def _interfaces_from_ioctl() -> List[InterfaceAddress]:
    """Read each interface's primary IPv4 address (Linux)."""
    if fcntl is None or not hasattr(socket, "if_nameindex"):
        return []

    found = []
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
        for _, name in socket.if_nameindex():
            try:
                packed = fcntl.ioctl(
                    s.fileno(),
                    SIOCGIFADDR,
                    struct.pack("256s", name[:15].encode("utf-8")),
                )
            except OSError:
                # Interface is down or has no IPv4 address
                continue
            found.append(InterfaceAddress(name, socket.inet_ntoa(packed[20:24])))
    return found


def _interfaces_from_hostname() -> List[InterfaceAddress]:
    """Resolve the hostname and probe the default route."""
    found = []
    hostname = socket.gethostname()
    try:
        for info in socket.getaddrinfo(hostname, None, socket.AF_INET, socket.SOCK_STREAM):
            found.append(InterfaceAddress(hostname, info[4][0]))
    except socket.gaierror as e:
        logger.debug(f"Could not resolve {hostname}: {e}")

    # Connecting a UDP socket sends nothing, it only selects a route
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as s:
            s.connect(("8.8.8.8", 80))
            found.append(InterfaceAddress("default route", s.getsockname()[0]))
    except OSError as e:
        logger.debug(f"No default route: {e}")
    return found


def list_ipv4_interfaces() -> List[InterfaceAddress]:
    """
    Enumerate the host's non-loopback IPv4 addresses.

    Returns:
        Interface addresses in discovery order, without duplicates
    """
    candidates = _interfaces_from_ip_command()
    if not any(is_usable_ipv4(c.address) for c in candidates):
        candidates = _interfaces_from_ioctl()
    if not any(is_usable_ipv4(c.address) for c in candidates):
        candidates = _interfaces_from_hostname()

    seen = set()
    result = []
    for iface in candidates:
        if not is_usable_ipv4(iface.address) or iface.address in seen:
            continue
        seen.add(iface.address)
        result.append(iface)
    return result


def build_candidate_urls(interfaces: List[InterfaceAddress], port: int, route: str,
                         preferred_prefix: str = "") -> List[CandidateUrl]:
    """Turn interface addresses into artifact URLs, flagging the preferred subnet."""
    path = route.lstrip("/")
    return [
        CandidateUrl(
            url=f"http://{iface.address}:{port}/{path}",
            interface=iface.name,
            preferred=bool(preferred_prefix) and iface.address.startswith(preferred_prefix),
        )
        for iface in interfaces
    ]
