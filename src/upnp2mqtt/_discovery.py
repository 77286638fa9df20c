"""SSDP discovery port and adapters.

Turns SSDP traffic into :class:`DiscoveryEvent` values:

==========================  ======================
SSDP message                :class:`DiscoveryKind`
==========================  ======================
M-SEARCH response           ``FOUND``
NOTIFY ``ssdp:alive``       ``AVAILABLE``
NOTIFY ``ssdp:update``      ``UPDATE``
NOTIFY ``ssdp:byebye``      ``UNAVAILABLE``
==========================  ======================

Only ``upnp:rootdevice`` advertisements are reported: every device
sends one per embedded device and service as well, and the root one is
enough to fetch the whole description.
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import socket
import struct
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)

SSDP_ADDR = "239.255.255.250"
SSDP_PORT = 1900
ROOT_DEVICE = "upnp:rootdevice"

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


class DiscoveryKind(enum.Enum):
    FOUND = "found"
    AVAILABLE = "available"
    UPDATE = "update"
    UNAVAILABLE = "unavailable"


@dataclass(frozen=True, slots=True)
class DiscoveryEvent:
    """A device appeared, changed or disappeared on the network."""

    usn: str
    location: str
    server: str = ""
    kind: DiscoveryKind = DiscoveryKind.FOUND


DiscoveryCallback = Callable[[DiscoveryEvent], None]

_NTS_KINDS = {
    "ssdp:alive": DiscoveryKind.AVAILABLE,
    "ssdp:update": DiscoveryKind.UPDATE,
    "ssdp:byebye": DiscoveryKind.UNAVAILABLE,
}


def build_msearch(search_target: str = "ssdp:all", mx: int = 2) -> bytes:
    """Build an M-SEARCH request datagram."""
    return (
        "M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {SSDP_ADDR}:{SSDP_PORT}\r\n"
        'MAN: "ssdp:discover"\r\n'
        f"MX: {mx}\r\n"
        f"ST: {search_target}\r\n"
        "\r\n"
    ).encode()


def parse_ssdp_message(raw: str) -> DiscoveryEvent | None:
    """Parse an SSDP datagram into a :class:`DiscoveryEvent`.

    Returns ``None`` for M-SEARCH requests from other control points,
    non-root advertisements, and datagrams missing a USN (or a LOCATION
    on anything but ``ssdp:byebye``).
    """
    lines = raw.split("\r\n")
    start = lines[0].strip().upper()
    headers: dict[str, str] = {}
    for line in lines[1:]:
        if ":" in line:
            key, _, value = line.partition(":")
            headers[key.strip().lower()] = value.strip()

    if start.startswith("HTTP/"):
        kind = DiscoveryKind.FOUND
        target = headers.get("st", "")
    elif start.startswith("NOTIFY"):
        kind = _NTS_KINDS.get(headers.get("nts", "").lower())
        if kind is None:
            return None
        target = headers.get("nt", "")
    else:
        return None

    if target.lower() != ROOT_DEVICE:
        return None

    usn = headers.get("usn", "")
    location = headers.get("location", "")
    if not usn or (not location and kind is not DiscoveryKind.UNAVAILABLE):
        return None

    return DiscoveryEvent(
        usn=usn,
        location=location,
        server=headers.get("server", ""),
        kind=kind,
    )


# ---------------------------------------------------------------------------
# Port (Protocol)
# ---------------------------------------------------------------------------


@runtime_checkable
class DiscoveryPort(Protocol):
    """Source of discovery events."""

    def on_event(self, callback: DiscoveryCallback) -> None: ...

    async def start(self) -> None: ...

    async def stop(self) -> None: ...

    def search(self) -> None: ...


# ---------------------------------------------------------------------------
# Mock / test-double adapter
# ---------------------------------------------------------------------------


@dataclass
class MockDiscovery:
    """In-memory discovery source; ``emit()`` fakes an SSDP message."""

    searches: int = 0
    started: bool = False
    _callbacks: list[DiscoveryCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )

    def on_event(self, callback: DiscoveryCallback) -> None:
        self._callbacks.append(callback)

    async def start(self) -> None:
        self.started = True

    async def stop(self) -> None:
        self.started = False

    def search(self) -> None:
        self.searches += 1

    def emit(self, event: DiscoveryEvent) -> None:
        """Deliver *event* to every registered callback."""
        for cb in self._callbacks:
            cb(event)


# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


class _SsdpProtocol(asyncio.DatagramProtocol):
    def __init__(self, owner: SsdpDiscovery) -> None:
        self._owner = owner

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        event = parse_ssdp_message(data.decode("utf-8", errors="replace"))
        if event is None:
            return
        logger.debug("SSDP %s from %s: %s", event.kind.value, addr[0], event.usn)
        self._owner._dispatch(event)

    def error_received(self, exc: Exception) -> None:
        logger.warning("SSDP socket error: %s", exc)


class SsdpDiscovery:
    """SSDP listener and searcher on the standard multicast group.

    One UDP socket joined to ``239.255.255.250:1900`` receives both
    NOTIFY advertisements and the unicast replies to our own
    M-SEARCH requests.  A background task repeats the search every
    ``search_interval`` seconds so devices that missed an
    advertisement are found again.
    """

    def __init__(
        self,
        *,
        search_target: str = "ssdp:all",
        mx: int = 2,
        search_interval: float = 300.0,
    ) -> None:
        self._request = build_msearch(search_target, mx)
        self._search_interval = search_interval
        self._callbacks: list[DiscoveryCallback] = []
        self._transport: asyncio.DatagramTransport | None = None
        self._search_task: asyncio.Task[None] | None = None

    def on_event(self, callback: DiscoveryCallback) -> None:
        self._callbacks.append(callback)

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _SsdpProtocol(self),
            sock=self._open_socket(),
        )
        self._transport = transport
        self._search_task = asyncio.create_task(self._search_loop())
        logger.info("SSDP listening on %s:%d", SSDP_ADDR, SSDP_PORT)

    async def stop(self) -> None:
        if self._search_task is not None:
            self._search_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._search_task
            self._search_task = None
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    def search(self) -> None:
        """Broadcast one M-SEARCH request."""
        if self._transport is None:
            logger.debug("SSDP search requested before start, ignored")
            return
        self._transport.sendto(self._request, (SSDP_ADDR, SSDP_PORT))

    def _dispatch(self, event: DiscoveryEvent) -> None:
        for cb in self._callbacks:
            try:
                cb(event)
            except Exception:
                logger.exception("Error in discovery callback for %s", event.usn)

    async def _search_loop(self) -> None:
        while True:
            self.search()
            await asyncio.sleep(self._search_interval)

    @staticmethod
    def _open_socket() -> socket.socket:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if hasattr(socket, "SO_REUSEPORT"):
            with contextlib.suppress(OSError):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        sock.bind(("", SSDP_PORT))
        membership = struct.pack("4sl", socket.inet_aton(SSDP_ADDR), socket.INADDR_ANY)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, membership)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
        sock.setblocking(False)
        return sock
