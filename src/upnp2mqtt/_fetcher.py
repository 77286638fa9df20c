"""Description fetching with an idempotency guard over locations.

A location is in the :class:`ProcessedGuard` exactly while a fetch for
it is in flight or a device record built from it exists.  The fetcher
adds the location *before* awaiting the network so two discovery events
for the same location racing each other produce a single request, and
removes it again when the fetch fails so a retry can get through.
Removal after success is the registry teardown's job.
"""

from __future__ import annotations

import logging

from upnp2mqtt._description import DescriptionPort, DeviceDescriptor, build_descriptor
from upnp2mqtt._errors import FetchError

logger = logging.getLogger(__name__)


class ProcessedGuard:
    """Set of locations that are being fetched or back a live device."""

    def __init__(self) -> None:
        self._locations: set[str] = set()

    def __contains__(self, location: object) -> bool:
        return location in self._locations

    def __len__(self) -> int:
        return len(self._locations)

    def add(self, location: str) -> None:
        self._locations.add(location)

    def release(self, location: str) -> None:
        """Forget *location*; a no-op when it is not guarded."""
        self._locations.discard(location)

    def clear(self) -> None:
        self._locations.clear()


class DescriptionFetcher:
    """Resolves a location to a :class:`DeviceDescriptor`, at most once."""

    def __init__(self, port: DescriptionPort, guard: ProcessedGuard) -> None:
        self._port = port
        self._guard = guard

    async def fetch(self, location: str) -> DeviceDescriptor | None:
        """Fetch and parse the description at *location*.

        Returns ``None`` without touching the network when *location* is
        already guarded.

        Raises:
            FetchError: On network or parse failure.  The guard entry is
                released before the error propagates.
        """
        if location in self._guard:
            logger.debug("Description for %s already in flight or active", location)
            return None

        self._guard.add(location)
        try:
            tree = await self._port.fetch(location)
            return build_descriptor(tree, location)
        except FetchError:
            self._guard.release(location)
            raise
        except Exception as exc:
            self._guard.release(location)
            raise FetchError(location, str(exc) or type(exc).__name__) from exc
