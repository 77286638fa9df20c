"""GENA event subscription port and adapters.

A :class:`SubscriptionHandle` is opened per eventable service.  Its
life cycle is the one of a UPnP event subscription:

1. ``await handle.subscribe()`` sends SUBSCRIBE and returns the SID.
2. The adapter renews the lease on its own schedule.  NOTIFY requests
   reach the callbacks registered with ``on_message``.
3. A renewal that fails is reported through ``on_error`` with kind
   :attr:`SubscriptionErrorKind.RESUBSCRIBE`; the handle is dead after
   that.
4. ``await handle.unsubscribe()`` (or the fire-and-forget
   ``unsubscribe_nowait()``) sends UNSUBSCRIBE.

Raw notifications are passed on undecoded beyond the XML tree: a
property set with one property arrives as a mapping, one with several
as a list of single-key mappings.
"""

from __future__ import annotations

import asyncio
import enum
import itertools
import logging
import re
import secrets
import socket
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeAlias, runtime_checkable
from urllib.parse import urlsplit

import httpx
from aiohttp import web

from upnp2mqtt._description import parse_xml

logger = logging.getLogger(__name__)

_TIMEOUT_RE = re.compile(r"second-(\d+)", re.IGNORECASE)

# Leases are renewed at half their granted length, never more often than this.
_MIN_RENEW_INTERVAL = 30.0

RawNotification: TypeAlias = Mapping[str, Any] | Sequence[Mapping[str, Any]]

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


class SubscriptionErrorKind(enum.Enum):
    SUBSCRIBE = "subscribe"
    RESUBSCRIBE = "resubscribe"
    UNSUBSCRIBE = "unsubscribe"


class GenaError(Exception):
    """A GENA request failed or was refused."""

    def __init__(self, kind: SubscriptionErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind


NotificationCallback = Callable[[str, RawNotification], Awaitable[Any]]
"""Async callback receiving ``(sid, raw_notification)``."""

ErrorCallback = Callable[[str, SubscriptionErrorKind, Exception], Awaitable[None]]
"""Async callback receiving ``(sid, kind, error)``."""


def parse_propertyset(text: str) -> RawNotification:
    """Decode a NOTIFY body into its raw property shape.

    Raises:
        ValueError: If *text* is not a GENA property set.
    """
    tree = parse_xml(text)
    propertyset = tree.get("propertyset")
    if not isinstance(propertyset, Mapping) or "property" not in propertyset:
        msg = "NOTIFY body is not a propertyset"
        raise ValueError(msg)
    return propertyset["property"]


def parse_timeout(header: str | None, default: int) -> int:
    """Parse a ``TIMEOUT: Second-N`` header; ``infinite`` maps to *default*."""
    if header:
        match = _TIMEOUT_RE.search(header)
        if match:
            return int(match.group(1))
    return default


# ---------------------------------------------------------------------------
# Port (Protocol)
# ---------------------------------------------------------------------------


@runtime_checkable
class SubscriptionHandle(Protocol):
    """One event subscription against one service."""

    @property
    def sid(self) -> str | None: ...

    def on_message(self, callback: NotificationCallback) -> None: ...

    def on_error(self, callback: ErrorCallback) -> None: ...

    async def subscribe(self) -> str: ...

    async def unsubscribe(self) -> None: ...

    def unsubscribe_nowait(self) -> None: ...


@runtime_checkable
class SubscriptionPort(Protocol):
    """Factory for subscription handles."""

    def open(
        self,
        event_url: str,
        lease_seconds: int | None = None,
    ) -> SubscriptionHandle: ...


# ---------------------------------------------------------------------------
# Mock / test-double adapter
# ---------------------------------------------------------------------------


@dataclass
class MockSubscriptionHandle:
    """Test double for :class:`SubscriptionHandle`."""

    client: MockSubscriptionClient
    event_url: str
    lease_seconds: int | None = None
    _sid: str | None = field(default=None, init=False)
    _message_callbacks: list[NotificationCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )
    _error_callbacks: list[ErrorCallback] = field(
        default_factory=list,
        init=False,
        repr=False,
    )

    @property
    def sid(self) -> str | None:
        return self._sid

    def on_message(self, callback: NotificationCallback) -> None:
        self._message_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        self._error_callbacks.append(callback)

    async def subscribe(self) -> str:
        self.client.subscribe_calls.append(self.event_url)
        gate = self.client.subscribe_gates.get(self.event_url)
        if gate is not None:
            await gate.wait()
        failure = self.client.subscribe_failures.get(self.event_url)
        if failure is not None:
            raise failure
        if self.event_url in self.client.empty_sid_urls:
            return ""
        self._sid = f"uuid:sub-{next(self.client._counter)}"
        self.client.handles[self._sid] = self
        return self._sid

    async def unsubscribe(self) -> None:
        if self._sid is None:
            return
        self.client.unsubscribed.append(self._sid)
        failure = self.client.unsubscribe_failures.get(self.event_url)
        if failure is not None:
            raise failure

    def unsubscribe_nowait(self) -> None:
        if self._sid is not None:
            self.client.unsubscribed_nowait.append(self._sid)

    async def deliver(self, raw: RawNotification) -> None:
        for cb in self._message_callbacks:
            await cb(self._sid or "", raw)

    async def fail(self, kind: SubscriptionErrorKind, error: Exception) -> None:
        for cb in self._error_callbacks:
            await cb(self._sid or "", kind, error)


@dataclass
class MockSubscriptionClient:
    """Records subscription traffic and lets tests inject failures.

    - ``subscribe_failures`` / ``unsubscribe_failures`` map event URLs
      to the exception the call raises.
    - ``empty_sid_urls`` acknowledge SUBSCRIBE without a SID.
    - ``subscribe_gates`` hold a SUBSCRIBE to that URL until the event
      is set.
    """

    subscribe_failures: dict[str, Exception] = field(default_factory=dict)
    unsubscribe_failures: dict[str, Exception] = field(default_factory=dict)
    empty_sid_urls: set[str] = field(default_factory=set)
    subscribe_gates: dict[str, asyncio.Event] = field(default_factory=dict)
    opened: list[str] = field(default_factory=list)
    subscribe_calls: list[str] = field(default_factory=list)
    unsubscribed: list[str] = field(default_factory=list)
    unsubscribed_nowait: list[str] = field(default_factory=list)
    handles: dict[str, MockSubscriptionHandle] = field(default_factory=dict)
    _counter: itertools.count[int] = field(
        default_factory=lambda: itertools.count(1),
        init=False,
        repr=False,
    )

    def open(
        self,
        event_url: str,
        lease_seconds: int | None = None,
    ) -> MockSubscriptionHandle:
        self.opened.append(event_url)
        return MockSubscriptionHandle(self, event_url, lease_seconds)

    async def deliver(self, sid: str, raw: RawNotification) -> None:
        """Simulate a NOTIFY for *sid*."""
        await self.handles[sid].deliver(raw)

    async def fail_renewal(self, sid: str) -> None:
        """Simulate a failed lease renewal for *sid*."""
        error = GenaError(SubscriptionErrorKind.RESUBSCRIBE, "renewal refused")
        await self.handles[sid].fail(SubscriptionErrorKind.RESUBSCRIBE, error)


# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


class GenaSubscription:
    """A GENA subscription managed by :class:`GenaClient`.

    Each handle has its own callback path, so NOTIFY requests are routed
    to it even before the SUBSCRIBE response carrying the SID has been
    read.  Notifications arriving that early are held back and
    delivered right after :meth:`subscribe` returns.
    """

    def __init__(
        self,
        client: GenaClient,
        event_url: str,
        lease_seconds: int,
        token: str,
    ) -> None:
        self._client = client
        self._event_url = event_url
        self._lease_seconds = lease_seconds
        self._token = token
        self._sid: str | None = None
        self._message_callbacks: list[NotificationCallback] = []
        self._error_callbacks: list[ErrorCallback] = []
        self._early: list[RawNotification] = []
        self._renew_task: asyncio.Task[None] | None = None

    @property
    def sid(self) -> str | None:
        return self._sid

    def on_message(self, callback: NotificationCallback) -> None:
        self._message_callbacks.append(callback)

    def on_error(self, callback: ErrorCallback) -> None:
        self._error_callbacks.append(callback)

    async def subscribe(self) -> str:
        callback = self._client.callback_url(self._event_url, self._token)
        try:
            resp = await self._request(
                "SUBSCRIBE",
                SubscriptionErrorKind.SUBSCRIBE,
                {
                    "CALLBACK": f"<{callback}>",
                    "NT": "upnp:event",
                    "TIMEOUT": f"Second-{self._lease_seconds}",
                },
            )
        except GenaError:
            self._client._forget(self._token)
            raise
        sid = resp.headers.get("SID", "")
        if not sid:
            self._client._forget(self._token)
            return ""
        self._sid = sid
        granted = parse_timeout(resp.headers.get("TIMEOUT"), self._lease_seconds)
        self._renew_task = asyncio.create_task(self._renew_loop(granted))
        if self._early:
            # Runs after the caller has recorded the SID.
            asyncio.get_running_loop().call_soon(self._flush_early)
        return sid

    async def unsubscribe(self) -> None:
        self._stop_renewing()
        self._client._forget(self._token)
        if self._sid is None:
            return
        await self._request(
            "UNSUBSCRIBE",
            SubscriptionErrorKind.UNSUBSCRIBE,
            {"SID": self._sid},
        )

    def unsubscribe_nowait(self) -> None:
        self._client._spawn(self._unsubscribe_logged())

    async def _unsubscribe_logged(self) -> None:
        try:
            await self.unsubscribe()
        except GenaError as exc:
            logger.warning("Unsubscribe of %s failed: %s", self._sid, exc)

    async def _deliver(self, raw: RawNotification) -> None:
        if self._sid is None:
            self._early.append(raw)
            return
        for cb in self._message_callbacks:
            try:
                await cb(self._sid, raw)
            except Exception:
                logger.exception("Error in notification callback for %s", self._sid)

    def _flush_early(self) -> None:
        early, self._early = self._early, []
        for raw in early:
            self._client._spawn(self._deliver(raw))

    async def _renew_loop(self, granted: int) -> None:
        while True:
            await asyncio.sleep(max(granted / 2, _MIN_RENEW_INTERVAL))
            try:
                resp = await self._request(
                    "SUBSCRIBE",
                    SubscriptionErrorKind.RESUBSCRIBE,
                    {"SID": self._sid or "", "TIMEOUT": f"Second-{self._lease_seconds}"},
                )
            except GenaError as exc:
                self._client._forget(self._token)
                await self._report(SubscriptionErrorKind.RESUBSCRIBE, exc)
                return
            granted = parse_timeout(resp.headers.get("TIMEOUT"), self._lease_seconds)
            logger.debug("Renewed %s for %ds", self._sid, granted)

    async def _report(self, kind: SubscriptionErrorKind, error: Exception) -> None:
        for cb in self._error_callbacks:
            try:
                await cb(self._sid or "", kind, error)
            except Exception:
                logger.exception("Error in error callback for %s", self._sid)

    def _stop_renewing(self) -> None:
        if self._renew_task is not None and self._renew_task is not asyncio.current_task():
            self._renew_task.cancel()
        self._renew_task = None

    async def _request(
        self,
        method: str,
        kind: SubscriptionErrorKind,
        headers: dict[str, str],
    ) -> httpx.Response:
        try:
            resp = await self._client.http.request(method, self._event_url, headers=headers)
        except httpx.HTTPError as exc:
            msg = f"{method} {self._event_url}: {str(exc) or type(exc).__name__}"
            raise GenaError(kind, msg) from exc
        if resp.status_code != 200:  # noqa: PLR2004
            msg = f"{method} {self._event_url}: HTTP {resp.status_code}"
            raise GenaError(kind, msg)
        return resp


class GenaClient:
    """Production :class:`SubscriptionPort` over HTTP.

    Requests go out through one ``httpx.AsyncClient``; NOTIFY requests
    are received by an ``aiohttp.web`` server on
    ``/notify/{token}``.  ``close()`` gives fire-and-forget
    UNSUBSCRIBE requests ``shutdown_grace`` seconds to complete.
    """

    def __init__(
        self,
        *,
        callback_host: str = "",
        callback_port: int = 0,
        lease_seconds: int = 1800,
        request_timeout: float = 10.0,
        shutdown_grace: float = 2.0,
    ) -> None:
        self._callback_host = callback_host
        self._callback_port = callback_port
        self._lease_seconds = lease_seconds
        self._shutdown_grace = shutdown_grace
        self.http = httpx.AsyncClient(timeout=request_timeout)
        self._subscriptions: dict[str, GenaSubscription] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._runner: web.AppRunner | None = None
        self._port = callback_port

    # -- SubscriptionPort ---------------------------------------------------

    def open(
        self,
        event_url: str,
        lease_seconds: int | None = None,
    ) -> GenaSubscription:
        token = secrets.token_hex(8)
        handle = GenaSubscription(self, event_url, lease_seconds or self._lease_seconds, token)
        self._subscriptions[token] = handle
        return handle

    # -- Lifecycle ----------------------------------------------------------

    async def start(self) -> None:
        """Start the NOTIFY callback server."""
        app = web.Application()
        app.router.add_route("NOTIFY", "/notify/{token}", self._handle_notify)
        self._runner = web.AppRunner(app, access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, "0.0.0.0", self._callback_port)  # noqa: S104
        await site.start()
        self._port = self._runner.addresses[0][1]
        logger.info("GENA callback server listening on port %d", self._port)

    async def close(self) -> None:
        """Wait briefly for pending unsubscribes, then shut down."""
        for handle in list(self._subscriptions.values()):
            handle._stop_renewing()
        if self._tasks:
            _done, pending = await asyncio.wait(set(self._tasks), timeout=self._shutdown_grace)
            for task in pending:
                task.cancel()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        await self.http.aclose()

    def callback_url(self, event_url: str, token: str) -> str:
        host = self._callback_host or _local_address_for(event_url)
        return f"http://{host}:{self._port}/notify/{token}"

    # -- Internal -----------------------------------------------------------

    def _forget(self, token: str) -> None:
        self._subscriptions.pop(token, None)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle_notify(self, request: web.Request) -> web.Response:
        handle = self._subscriptions.get(request.match_info["token"])
        if handle is None:
            logger.debug("NOTIFY for unknown subscription %s", request.headers.get("SID"))
            return web.Response(status=412)
        body = await request.text()
        try:
            raw = parse_propertyset(body)
        except ValueError as exc:
            logger.warning("Malformed NOTIFY for %s: %s", request.headers.get("SID"), exc)
            return web.Response(status=400)
        await handle._deliver(raw)
        return web.Response(status=200)


def _local_address_for(url: str) -> str:
    """Local interface address that routes to the host of *url*."""
    parts = urlsplit(url)
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            sock.connect((parts.hostname or "127.0.0.1", parts.port or 80))
            return sock.getsockname()[0]
        except OSError:
            return "127.0.0.1"
