"""Device description documents: fetch, decode and service extraction.

A UPnP device description is an XML document.  The fetch adapter decodes
it into a plain nested tree (namespaces stripped, an element with one
child of a given tag is a mapping, repeated tags become a list) and the
pure functions below turn that tree into a :class:`DeviceDescriptor`.

The single-vs-list cardinality of ``serviceList/service`` and
``deviceList/device`` is normalised here, once, right after parsing.
Nothing downstream branches on the shape.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, TypeAlias, runtime_checkable
from urllib.parse import urljoin
from xml.etree import ElementTree

import httpx

from upnp2mqtt._errors import FetchError

logger = logging.getLogger(__name__)

Tree: TypeAlias = dict[str, Any]

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ServiceDescriptor:
    """An eventable service with its absolute subscription URL."""

    service_id: str
    event_url: str


@dataclass(frozen=True, slots=True)
class DeviceDescriptor:
    """The parts of a device description the bridge needs."""

    udn: str
    friendly_name: str
    device_type: str = ""
    services: tuple[ServiceDescriptor, ...] = ()


# ---------------------------------------------------------------------------
# XML decoding
# ---------------------------------------------------------------------------


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _element_to_tree(element: ElementTree.Element) -> Any:
    children = list(element)
    if not children:
        return (element.text or "").strip()
    tree: Tree = {}
    for child in children:
        key = _local(child.tag)
        value = _element_to_tree(child)
        if key not in tree:
            tree[key] = value
        elif isinstance(tree[key], list):
            tree[key].append(value)
        else:
            tree[key] = [tree[key], value]
    return tree


def parse_xml(text: str) -> Tree:
    """Decode an XML document into ``{root_tag: tree}``.

    Raises:
        ValueError: If *text* is not well-formed XML.
    """
    try:
        root = ElementTree.fromstring(text)
    except ElementTree.ParseError as exc:
        msg = f"malformed XML: {exc}"
        raise ValueError(msg) from exc
    return {_local(root.tag): _element_to_tree(root)}


# ---------------------------------------------------------------------------
# Service extraction
# ---------------------------------------------------------------------------


def as_list(node: Any) -> list[Any]:
    """Normalise a tree node that may be absent, single or repeated."""
    if node is None or node == "":
        return []
    if isinstance(node, Sequence) and not isinstance(node, str):
        return list(node)
    return [node]


def _children(device: Mapping[str, Any], list_tag: str, item_tag: str) -> list[Any]:
    container = device.get(list_tag)
    if not isinstance(container, Mapping):
        return []
    return [item for item in as_list(container.get(item_tag)) if isinstance(item, Mapping)]


def extract_services(
    device: Mapping[str, Any],
    base_location: str,
) -> list[ServiceDescriptor]:
    """Return the eventable services of *device*, in document order.

    Services without an ``eventSubURL`` are skipped.  Relative URLs are
    resolved against *base_location*.  Embedded devices are walked
    depth-first after the device's own services.
    """
    services: list[ServiceDescriptor] = []
    for service in _children(device, "serviceList", "service"):
        path = service.get("eventSubURL")
        if not path or not isinstance(path, str):
            continue
        services.append(
            ServiceDescriptor(
                service_id=str(service.get("serviceId", "")),
                event_url=urljoin(base_location, path),
            ),
        )
    for embedded in _children(device, "deviceList", "device"):
        services.extend(extract_services(embedded, base_location))
    return services


def build_descriptor(tree: Mapping[str, Any], location: str) -> DeviceDescriptor:
    """Turn a decoded description document into a :class:`DeviceDescriptor`.

    ``URLBase``, when the document carries one, takes precedence over
    *location* for resolving relative URLs.

    Raises:
        FetchError: If the document has no ``root/device`` or no UDN.
    """
    root = tree.get("root")
    device = root.get("device") if isinstance(root, Mapping) else None
    if not isinstance(device, Mapping):
        raise FetchError(location, "description has no root device")

    udn = device.get("UDN")
    if not udn or not isinstance(udn, str):
        raise FetchError(location, "description has no UDN")

    base = root.get("URLBase") or location
    return DeviceDescriptor(
        udn=udn,
        friendly_name=str(device.get("friendlyName") or udn),
        device_type=str(device.get("deviceType") or ""),
        services=tuple(extract_services(device, base)),
    )


# ---------------------------------------------------------------------------
# Port (Protocol)
# ---------------------------------------------------------------------------


@runtime_checkable
class DescriptionPort(Protocol):
    """Fetches and decodes a description document."""

    async def fetch(self, url: str) -> Tree:
        """Return the decoded tree; raise :class:`FetchError` on failure."""
        ...


# ---------------------------------------------------------------------------
# Mock / test-double adapter
# ---------------------------------------------------------------------------


@dataclass
class MockDescriptionClient:
    """In-memory description source.

    ``documents`` maps URLs to decoded trees or to an exception to
    raise.  While ``gate`` is set to an unset :class:`asyncio.Event`,
    every fetch blocks on it, which lets tests overlap two fetches.
    """

    documents: dict[str, Tree | Exception] = field(default_factory=dict)
    calls: list[str] = field(default_factory=list)
    gate: asyncio.Event | None = None

    async def fetch(self, url: str) -> Tree:
        self.calls.append(url)
        if self.gate is not None:
            await self.gate.wait()
        document = self.documents.get(url)
        if document is None:
            raise FetchError(url, "not found")
        if isinstance(document, Exception):
            raise document
        return document


# ---------------------------------------------------------------------------
# Real adapter
# ---------------------------------------------------------------------------


class HttpDescriptionClient:
    """Fetches description documents over HTTP with *httpx*."""

    def __init__(self, *, timeout: float = 10.0) -> None:
        self._client = httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def fetch(self, url: str) -> Tree:
        try:
            resp = await self._client.get(url)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise FetchError(url, str(exc) or type(exc).__name__) from exc
        try:
            return parse_xml(resp.text)
        except ValueError as exc:
            raise FetchError(url, str(exc)) from exc

    async def aclose(self) -> None:
        await self._client.aclose()
