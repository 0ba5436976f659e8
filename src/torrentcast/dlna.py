"""
DLNA media renderer discovery (SSDP) and control (UPnP AVTransport over SOAP).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple
from urllib.parse import urljoin
from xml.sax.saxutils import escape

import aiohttp
import defusedxml.ElementTree as ET

logger = logging.getLogger(__name__)

SSDP_MULTICAST_IP = "239.255.255.250"
SSDP_MULTICAST_PORT = 1900
MEDIA_RENDERER_TYPE = "urn:schemas-upnp-org:device:MediaRenderer:1"
REQUEST_TIMEOUT = 10

DEVICE_NS = {"device": "urn:schemas-upnp-org:device-1-0"}


class DlnaError(Exception):
    """Exception raised when a renderer cannot be discovered or controlled."""

    pass


@dataclass(frozen=True)
class Renderer:
    """A media renderer exposing the AVTransport service."""

    location: str
    name: str
    control_url: str
    service_type: str


def build_msearch_request(search_target: str = MEDIA_RENDERER_TYPE) -> bytes:
    """Build an SSDP M-SEARCH request."""
    msg = (
        "M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {SSDP_MULTICAST_IP}:{SSDP_MULTICAST_PORT}\r\n"
        'MAN: "ssdp:discover"\r\n'
        "MX: 3\r\n"
        f"ST: {search_target}\r\n"
        "\r\n"
    )
    return msg.encode("utf-8")


def parse_ssdp_response(response: bytes) -> Dict[str, str]:
    """Parse SSDP response headers, keys lowercased."""
    headers: Dict[str, str] = {}
    lines = response.decode("utf-8", errors="ignore").split("\r\n")
    for line in lines[1:]:  # Skip status line
        if ":" in line:
            key, value = line.split(":", 1)
            headers[key.strip().lower()] = value.strip()
    return headers


class _SsdpProtocol(asyncio.DatagramProtocol):
    def __init__(self, on_location: Callable[[str], None]) -> None:
        self.on_location = on_location

    def datagram_received(self, data: bytes, addr: Tuple[str, int]) -> None:
        location = parse_ssdp_response(data).get("location")
        if location:
            self.on_location(location)

    def error_received(self, exc: Exception) -> None:
        logger.debug(f"SSDP socket error: {exc}")


class SsdpBrowser:
    """
    Sends M-SEARCH requests for media renderers and reports every answering
    device location, once per location.
    """

    def __init__(self, on_device: Callable[[str], None], search_target: str = MEDIA_RENDERER_TYPE) -> None:
        self.search_target = search_target
        self._on_device = on_device
        self._seen: set[str] = set()
        self._transport: Optional[asyncio.DatagramTransport] = None

    async def start(self) -> None:
        """
        Raises:
            DlnaError: If the discovery socket cannot be opened
        """
        loop = asyncio.get_running_loop()
        try:
            self._transport, _ = await loop.create_datagram_endpoint(
                lambda: _SsdpProtocol(self._on_location), local_addr=("0.0.0.0", 0)
            )
        except OSError as e:
            raise DlnaError(f"Cannot open SSDP socket: {e}") from e

    def search(self) -> None:
        if self._transport is None:
            raise DlnaError("SSDP browser is not started")
        self._transport.sendto(build_msearch_request(self.search_target), (SSDP_MULTICAST_IP, SSDP_MULTICAST_PORT))

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    def _on_location(self, location: str) -> None:
        if location in self._seen:
            return
        self._seen.add(location)
        logger.debug(f"Found DLNA renderer at {location}")
        self._on_device(location)


async def fetch_renderer(session: aiohttp.ClientSession, location: str) -> Renderer:
    """
    Read a device description and find its AVTransport control URL.

    Raises:
        DlnaError: If the description is unreachable, malformed or lacks AVTransport
    """
    try:
        async with session.get(location, timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT)) as response:
            if response.status != 200:
                raise DlnaError(f"Failed to fetch device description: HTTP {response.status}")
            xml_content = await response.text()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise DlnaError(f"Network error fetching device description: {e}") from e

    try:
        root = ET.fromstring(xml_content)
    except (ET.ParseError, ValueError) as e:
        raise DlnaError(f"Failed to parse device description XML: {e}") from e

    name = root.findtext(".//device:friendlyName", default=location, namespaces=DEVICE_NS)
    for service in root.findall(".//device:service", DEVICE_NS):
        service_type = service.findtext("device:serviceType", default="", namespaces=DEVICE_NS)
        control_url = service.findtext("device:controlURL", default="", namespaces=DEVICE_NS)
        if "AVTransport" in service_type and control_url:
            return Renderer(
                location=location,
                name=name,
                control_url=urljoin(location, control_url),
                service_type=service_type,
            )
    raise DlnaError(f"No AVTransport service found on {name}")


def build_soap_action(action_name: str, service_type: str, parameters: Dict[str, str]) -> str:
    """Build a SOAP action request body; parameter values are XML-escaped."""
    param_xml = "".join(f"<{key}>{escape(value)}</{key}>" for key, value in parameters.items())
    return (
        '<?xml version="1.0" encoding="utf-8"?>'
        '<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/" '
        's:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">'
        f'<s:Body><u:{action_name} xmlns:u="{service_type}">{param_xml}</u:{action_name}></s:Body>'
        "</s:Envelope>"
    )


def _upnp_class(content_type: str) -> str:
    if content_type.startswith("video/"):
        return "object.item.videoItem.movie"
    if content_type.startswith("audio/"):
        return "object.item.audioItem.musicTrack"
    if content_type.startswith("image/"):
        return "object.item.imageItem.photo"
    return "object.item"


def didl_metadata(url: str, title: str, content_type: str, subtitles_url: Optional[str] = None) -> str:
    """DIDL-Lite description of one playable item."""
    captions = ""
    if subtitles_url:
        captions = f'<sec:CaptionInfoEx sec:type="srt">{escape(subtitles_url)}</sec:CaptionInfoEx>'
    return (
        '<DIDL-Lite xmlns="urn:schemas-upnp-org:metadata-1-0/DIDL-Lite/" '
        'xmlns:dc="http://purl.org/dc/elements/1.1/" '
        'xmlns:upnp="urn:schemas-upnp-org:metadata-1-0/upnp/" '
        'xmlns:sec="http://www.sec.co.kr/">'
        '<item id="0" parentID="-1" restricted="1">'
        f"<dc:title>{escape(title)}</dc:title>"
        f"<upnp:class>{_upnp_class(content_type)}</upnp:class>"
        f'<res protocolInfo="http-get:*:{content_type}:*">{escape(url)}</res>'
        f"{captions}"
        "</item></DIDL-Lite>"
    )


async def send_soap_action(
    session: aiohttp.ClientSession, renderer: Renderer, action_name: str, parameters: Dict[str, str]
) -> None:
    """
    Raises:
        DlnaError: If the renderer rejects the action
    """
    body = build_soap_action(action_name, renderer.service_type, parameters)
    headers = {
        "Content-Type": 'text/xml; charset="utf-8"',
        "SOAPAction": f'"{renderer.service_type}#{action_name}"',
    }
    try:
        async with session.post(
            renderer.control_url,
            data=body.encode("utf-8"),
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=REQUEST_TIMEOUT),
        ) as response:
            if response.status != 200:
                raise DlnaError(f"{action_name} failed on {renderer.name}: HTTP {response.status}")
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise DlnaError(f"{action_name} failed on {renderer.name}: {e}") from e


async def play(
    session: aiohttp.ClientSession,
    renderer: Renderer,
    url: str,
    title: str,
    content_type: str,
    subtitles_url: Optional[str] = None,
) -> None:
    """Load ``url`` on the renderer and start playback."""
    await send_soap_action(
        session,
        renderer,
        "SetAVTransportURI",
        {
            "InstanceID": "0",
            "CurrentURI": url,
            "CurrentURIMetaData": didl_metadata(url, title, content_type, subtitles_url),
        },
    )
    await send_soap_action(session, renderer, "Play", {"InstanceID": "0", "Speed": "1"})
    logger.info(f"Playing on DLNA renderer {renderer.name}")
