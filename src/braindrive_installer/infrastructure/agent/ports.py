"""
Port availability probe.

``probe_port`` is a point-in-time check: it binds the port on IPv4 and on
IPv6 independently, closes both sockets immediately and reports the port
available only when both families are free. Nothing is reserved, so a
caller that probes and then starts a service must still handle the port
being taken in between.
"""

import asyncio
import errno
import socket
from dataclasses import dataclass
from typing import Iterable

import structlog

logger = structlog.get_logger()

POLL_INTERVAL = 0.25


@dataclass(frozen=True)
class PortProbe:
    """Result of probing one port."""

    port: int
    ipv4_available: bool
    ipv6_available: bool

    @property
    def available(self) -> bool:
        return self.ipv4_available and self.ipv6_available

    def to_dict(self) -> dict:
        return {
            "port": self.port,
            "available": self.available,
            "ipv4_available": self.ipv4_available,
            "ipv6_available": self.ipv6_available,
        }


def _can_bind(family: socket.AddressFamily, host: str, port: int) -> bool:
    try:
        sock = socket.socket(family, socket.SOCK_STREAM)
    except OSError as e:
        # no IPv6 stack on this host: nothing can be bound there
        if family == socket.AF_INET6 and e.errno in (errno.EAFNOSUPPORT, errno.EPROTONOSUPPORT):
            return True
        raise
    with sock:
        if family == socket.AF_INET6:
            sock.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 1)
        try:
            sock.bind((host, port))
        except OSError as e:
            if family == socket.AF_INET6 and e.errno == errno.EADDRNOTAVAIL:
                return True
            return False
    return True


def probe_port(port: int) -> PortProbe:
    """Check IPv4 and IPv6 bind-ability of ``port`` without holding it."""
    ipv4 = _can_bind(socket.AF_INET, "0.0.0.0", port)
    ipv6 = _can_bind(socket.AF_INET6, "::", port) if socket.has_ipv6 else True
    return PortProbe(port=port, ipv4_available=ipv4, ipv6_available=ipv6)


def find_available_port(preferred: int, fallbacks: Iterable[int] = ()) -> int | None:
    """First port that probes free: ``preferred`` first, then ``fallbacks``."""
    tried: set[int] = set()
    for port in (preferred, *fallbacks):
        if port in tried:
            continue
        tried.add(port)
        if probe_port(port).available:
            return port
        logger.debug("agent.port.occupied", port=port)
    return None


async def is_port_listening(port: int, timeout: float = 0.1) -> bool:
    """Whether something accepts TCP connections on localhost:``port``."""
    for host in ("127.0.0.1", "::1"):
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port), timeout=timeout
            )
        except (OSError, asyncio.TimeoutError):
            continue
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True
    return False


async def wait_for_port(port: int, timeout: float) -> bool:
    """Poll until ``port`` accepts connections or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if await is_port_listening(port):
            return True
        await asyncio.sleep(POLL_INTERVAL)
    return False


async def wait_for_port_free(port: int, timeout: float) -> bool:
    """Poll until nothing listens on ``port`` or ``timeout`` elapses."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if not await is_port_listening(port):
            return True
        await asyncio.sleep(POLL_INTERVAL)
    return False
