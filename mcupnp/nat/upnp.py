"""UPnP IGD (Internet Gateway Device) client and gateway adapter."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from urllib.parse import urljoin

import aiohttp
import defusedxml.ElementTree as ET  # noqa: N817

from mcupnp.models import PortProtocol, UPnPConfig
from mcupnp.nat.exceptions import UPnPError

logger = logging.getLogger(__name__)

# SSDP constants
SSDP_MULTICAST_IP = "239.255.255.250"
SSDP_MULTICAST_PORT = 1900
SSDP_MSEARCH_TIMEOUT = 3.0
SSDP_MSEARCH_RETRIES = 2

# UPnP IGD service constants
UPNP_IGD_SERVICE_TYPE = "urn:schemas-upnp-org:service:WANIPConnection:1"
UPNP_IGD_DEVICE_TYPE = "urn:schemas-upnp-org:device:InternetGatewayDevice:1"
SEARCH_TARGETS = (UPNP_IGD_SERVICE_TYPE, UPNP_IGD_DEVICE_TYPE)

DEFAULT_REQUEST_TIMEOUT = 10.0

# UPnP error codes meaning "no such mapping"
NO_SUCH_ENTRY_CODES = ("713", "714")


def build_msearch_request(search_target: str = UPNP_IGD_SERVICE_TYPE) -> bytes:
    """Build SSDP M-SEARCH request (UPnP Device Architecture 1.1)."""
    msg = (
        f"M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {SSDP_MULTICAST_IP}:{SSDP_MULTICAST_PORT}\r\n"
        'MAN: "ssdp:discover"\r\n'
        "MX: 2\r\n"
        f"ST: {search_target}\r\n"
        "\r\n"
    )
    return msg.encode("utf-8")


def parse_ssdp_response(response: bytes) -> dict[str, str]:
    """Parse SSDP response headers into a lower-cased dict."""
    headers: dict[str, str] = {}
    lines = response.decode("utf-8", errors="ignore").split("\r\n")
    for line in lines[1:]:  # Skip status line
        if ":" in line:
            key, value = line.split(":", 1)
            headers[key.strip().lower()] = value.strip()
    return headers


def is_igd_response(headers: dict[str, str]) -> bool:
    """Return True if an SSDP response advertises an Internet Gateway Device."""
    st = headers.get("st", "")
    nt = headers.get("nt", "")
    return any(
        marker in field
        for field in (st, nt)
        for marker in ("InternetGatewayDevice", "WANIPConnection")
    )


def get_local_ipv4() -> str | None:
    """Return the LAN address used for the default route, if any."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No packet is sent; connect() only selects the outgoing interface
        sock.connect(("8.8.8.8", 80))
        return sock.getsockname()[0]
    except OSError as e:
        logger.debug("Could not determine local IPv4 address: %s", e)
        return None
    finally:
        sock.close()


async def discover_upnp_devices(
    timeout: float = SSDP_MSEARCH_TIMEOUT,
) -> list[dict[str, str]]:
    """Discover UPnP IGD devices via SSDP.

    Returns:
        List of device info dictionaries with a 'location' URL, in the
        order the devices answered

    """
    loop = asyncio.get_running_loop()
    devices: list[dict[str, str]] = []
    seen_locations: set[str] = set()

    for attempt in range(SSDP_MSEARCH_RETRIES):
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        try:
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
            sock.bind(("0.0.0.0", 0))  # nosec B104 - SSDP replies arrive on any interface
            sock.setblocking(False)

            for search_target in SEARCH_TARGETS:
                await loop.sock_sendto(
                    sock,
                    build_msearch_request(search_target),
                    (SSDP_MULTICAST_IP, SSDP_MULTICAST_PORT),
                )

            deadline = loop.time() + timeout
            while (remaining := deadline - loop.time()) > 0:
                try:
                    data, addr = await asyncio.wait_for(
                        loop.sock_recvfrom(sock, 4096), timeout=remaining
                    )
                except asyncio.TimeoutError:
                    break

                headers = parse_ssdp_response(data)
                location = headers.get("location", "")
                if not is_igd_response(headers) or not location:
                    continue
                if location in seen_locations:
                    continue
                seen_locations.add(location)
                devices.append(
                    {
                        "location": location,
                        "server": headers.get("server", ""),
                        "usn": headers.get("usn", ""),
                    }
                )
                logger.debug("Found IGD at %s (from %s)", location, addr[0])
        except OSError as e:
            logger.debug(
                "SSDP discovery attempt %d/%d failed: %s",
                attempt + 1,
                SSDP_MSEARCH_RETRIES,
                e,
            )
        finally:
            sock.close()

        if devices:
            break

    if not devices:
        logger.debug(
            "No IGD answered after %d SSDP attempt(s)", SSDP_MSEARCH_RETRIES
        )
    return devices


async def fetch_device_description(
    location_url: str,
    timeout: float = DEFAULT_REQUEST_TIMEOUT,
) -> dict[str, str]:
    """Fetch the device description and locate the WANIPConnection service.

    Returns:
        Dictionary with 'control_url' and 'service_type'

    Raises:
        UPnPError: If unable to fetch or parse device description

    """
    try:
        async with aiohttp.ClientSession() as session, session.get(
            location_url, timeout=aiohttp.ClientTimeout(total=timeout)
        ) as response:
            if response.status != 200:
                msg = f"Failed to fetch device description: HTTP {response.status}"
                raise UPnPError(msg)
            xml_content = await response.text()
    except asyncio.TimeoutError as e:
        msg = f"Timeout fetching device description from {location_url}"
        raise UPnPError(msg) from e
    except aiohttp.ClientError as e:
        msg = f"Network error fetching device description: {e}"
        raise UPnPError(msg) from e

    try:
        root = ET.fromstring(xml_content)
    except ET.ParseError as e:
        msg = f"Failed to parse device description XML: {e}"
        raise UPnPError(msg) from e

    ns = {"device": "urn:schemas-upnp-org:device-1-0"}
    for service in root.findall(".//device:service", ns):
        service_type = service.findtext("device:serviceType", "", ns)
        if "WANIPConnection" not in service_type and "WANPPPConnection" not in service_type:
            continue
        control_url = service.findtext("device:controlURL", "", ns)
        if control_url:
            return {
                "control_url": urljoin(location_url, control_url),
                "service_type": service_type,
            }

    msg = "No WANIPConnection service found in device description"
    raise UPnPError(msg)


def build_soap_action(
    action_name: str,
    service_type: str,
    parameters: dict[str, str],
) -> str:
    """Build SOAP action request body."""
    param_xml = "\n".join(
        f"    <{key}>{value}</{key}>" for key, value in parameters.items()
    )

    return f"""<?xml version="1.0"?>
<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"
            s:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">
  <s:Body>
    <u:{action_name} xmlns:u="{service_type}">
{param_xml}
    </u:{action_name}>
  </s:Body>
</s:Envelope>"""


def parse_soap_response(response_xml: str, http_status: int) -> dict[str, str]:
    """Extract response arguments from a SOAP reply.

    Raises:
        UPnPError: On a SOAP fault, an unparseable body or a non-200 status.
            Faults carry the UPnP error code in the message, e.g.
            ``"SOAP fault: s:Client - UPnPError (UPnP error code: 714)"``.

    """
    try:
        root = ET.fromstring(response_xml)
    except ET.ParseError as e:
        msg = f"SOAP action failed: HTTP {http_status} (response not parseable as XML)"
        raise UPnPError(msg) from e

    ns = {"soap": "http://schemas.xmlsoap.org/soap/envelope/"}
    fault = root.find(".//soap:Fault", ns)
    if fault is not None:
        fault_code = fault.findtext("faultcode", "Unknown")
        fault_string = fault.findtext("faultstring", "Unknown error")
        error_code = None
        for elem in fault.iter():
            if elem.tag.split("}")[-1] == "errorCode":
                error_code = (elem.text or "").strip()
                break
        msg = f"SOAP fault: {fault_code} - {fault_string}"
        if error_code:
            msg += f" (UPnP error code: {error_code})"
        raise UPnPError(msg, {"error_code": error_code} if error_code else None)

    if http_status != 200:
        msg = f"SOAP action failed: HTTP {http_status}"
        raise UPnPError(msg)

    response_params: dict[str, str] = {}
    body = root.find(".//soap:Body", ns)
    if body is not None:
        for elem in body:
            if elem.tag.endswith("Response"):
                for child in elem:
                    response_params[child.tag.split("}")[-1]] = child.text or ""
                break
    return response_params


async def send_soap_action(
    control_url: str,
    action_name: str,
    service_type: str,
    parameters: dict[str, str],
    timeout: float = DEFAULT_REQUEST_TIMEOUT,
) -> dict[str, str]:
    """Send SOAP action request and parse response.

    Raises:
        UPnPError: If SOAP action fails

    """
    soap_body = build_soap_action(action_name, service_type, parameters)
    headers = {
        "Content-Type": 'text/xml; charset="utf-8"',
        "SOAPAction": f'"{service_type}#{action_name}"',
    }

    try:
        async with aiohttp.ClientSession() as session, session.post(
            control_url,
            data=soap_body,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            response_xml = await resp.text()
            http_status = resp.status
    except asyncio.TimeoutError as e:
        msg = f"Timeout sending {action_name}"
        raise UPnPError(msg) from e
    except aiohttp.ClientError as e:
        msg = f"Error sending {action_name}: {e}"
        raise UPnPError(msg) from e

    return parse_soap_response(response_xml, http_status)


def is_no_such_entry(error: UPnPError) -> bool:
    """Return True if ``error`` means the mapping does not exist."""
    code = error.details.get("error_code")
    if code is not None:
        return code in NO_SUCH_ENTRY_CODES
    return "NoSuchEntryInArray" in str(error)


class UPnPClient:
    """Async UPnP IGD client."""

    def __init__(
        self,
        device_url: str | None = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ):
        """Initialize UPnP client.

        Args:
            device_url: Device description URL (None to auto-discover)
            timeout: HTTP timeout for each request in seconds

        """
        self.configured_device_url = device_url
        self.device_url = device_url
        self.control_url: str | None = None
        self.service_type: str = UPNP_IGD_SERVICE_TYPE
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)

    def clear_cache(self) -> None:
        """Forget the discovered control URL to force re-discovery."""
        self.device_url = self.configured_device_url
        self.control_url = None
        self.logger.debug("Cleared UPnP client cache")

    async def discover(self) -> bool:
        """Discover UPnP IGD device and initialize control URL.

        Returns:
            True if discovery successful, False if no device answered

        Raises:
            UPnPError: If a device answered but its description is unusable

        """
        if self.device_url is None:
            devices = await discover_upnp_devices()
            if not devices:
                return False
            self.device_url = devices[0]["location"]

        service_info = await fetch_device_description(self.device_url, self.timeout)
        self.control_url = service_info["control_url"]
        self.service_type = service_info["service_type"]
        self.logger.debug(
            "Using IGD control URL %s (%s)", self.control_url, self.service_type
        )
        return True

    async def _action(self, action_name: str, parameters: dict[str, str]) -> dict[str, str]:
        if not self.control_url and not await self.discover():
            msg = "Failed to discover UPnP device"
            raise UPnPError(msg)
        if not self.control_url:
            msg = "Control URL not set"
            raise UPnPError(msg)
        return await send_soap_action(
            self.control_url,
            action_name,
            self.service_type,
            parameters,
            self.timeout,
        )

    async def get_external_ip(self) -> ipaddress.IPv4Address:
        """Get external IP address.

        Raises:
            UPnPError: If unable to get external IP

        """
        response = await self._action("GetExternalIPAddress", {})

        external_ip_str = response.get("NewExternalIPAddress")
        if not external_ip_str:
            msg = "No external IP in response"
            raise UPnPError(msg)

        try:
            return ipaddress.IPv4Address(external_ip_str)
        except ValueError as e:
            msg = f"Invalid external IP address: {external_ip_str}"
            raise UPnPError(msg) from e

    async def add_port_mapping(
        self,
        internal_port: int,
        external_port: int,
        protocol: str = "TCP",
        description: str = "",
        duration: int = 0,
    ) -> bool:
        """Add (or renew) a port mapping to this host.

        Re-adding an existing mapping for the same internal client renews
        its lease on IGD-compliant routers.

        Raises:
            UPnPError: If unable to add port mapping

        """
        internal_client_ip = get_local_ipv4() or ""
        params = {
            "NewRemoteHost": "",
            "NewExternalPort": str(external_port),
            "NewProtocol": protocol.upper(),
            "NewInternalPort": str(internal_port),
            "NewInternalClient": internal_client_ip,
            "NewEnabled": "1",
            "NewPortMappingDescription": description,
            "NewLeaseDuration": str(duration),
        }
        await self._action("AddPortMapping", params)
        self.logger.debug(
            "Mapped %s port %s -> %s:%s (duration: %s s)",
            protocol,
            external_port,
            internal_client_ip or "auto",
            internal_port,
            duration,
        )
        return True

    async def delete_port_mapping(self, external_port: int, protocol: str = "TCP") -> bool:
        """Delete port mapping.

        Returns:
            True if mapping deleted, False if it did not exist

        Raises:
            UPnPError: If unable to delete port mapping (other than not existing)

        """
        params = {
            "NewRemoteHost": "",
            "NewExternalPort": str(external_port),
            "NewProtocol": protocol.upper(),
        }
        try:
            await self._action("DeletePortMapping", params)
        except UPnPError as e:
            if is_no_such_entry(e):
                self.logger.debug(
                    "Port mapping %s:%s does not exist, nothing to delete",
                    protocol,
                    external_port,
                )
                return False
            raise
        return True

    async def get_specific_port_mapping(
        self, external_port: int, protocol: str = "TCP"
    ) -> dict[str, str] | None:
        """Look up one mapping by external port.

        Returns:
            The mapping entry, or None if the gateway has no such mapping

        Raises:
            UPnPError: If the lookup itself fails

        """
        params = {
            "NewRemoteHost": "",
            "NewExternalPort": str(external_port),
            "NewProtocol": protocol.upper(),
        }
        try:
            return await self._action("GetSpecificPortMappingEntry", params)
        except UPnPError as e:
            if is_no_such_entry(e):
                return None
            raise


class UPnPGateway:
    """Boolean, never-raising :class:`GatewayClient` backed by :class:`UPnPClient`."""

    def __init__(self, client: UPnPClient | None = None, lease_duration: int = 0) -> None:
        """Initialize gateway.

        Args:
            client: IGD client (auto-discovering by default)
            lease_duration: Lease requested for each mapping (0 for permanent)

        """
        self.client = client or UPnPClient()
        self.lease_duration = lease_duration
        self.logger = logging.getLogger(__name__)

    @classmethod
    def from_config(cls, config: UPnPConfig) -> UPnPGateway:
        """Build a gateway from the ``[upnp]`` config section."""
        client = UPnPClient(device_url=config.device_url, timeout=config.request_timeout)
        return cls(client, lease_duration=config.lease_duration)

    async def is_available(self) -> bool:
        try:
            await self.client.get_external_ip()
        except UPnPError as e:
            self.logger.debug("UPnP gateway not available: %s", e)
            self.client.clear_cache()
            return False
        return True

    async def get_external_address(self) -> str | None:
        try:
            return str(await self.client.get_external_ip())
        except UPnPError as e:
            self.logger.debug("Could not get external address: %s", e)
            return None

    async def is_mapped(self, protocol: PortProtocol, port: int) -> bool:
        try:
            entry = await self.client.get_specific_port_mapping(port, protocol.value)
        except UPnPError as e:
            self.logger.debug("Could not query %s port %d: %s", protocol.value, port, e)
            return False
        return entry is not None

    async def open(self, protocol: PortProtocol, port: int, description: str) -> bool:
        try:
            return await self.client.add_port_mapping(
                port,
                port,
                protocol.value,
                description=description,
                duration=self.lease_duration,
            )
        except UPnPError as e:
            self.logger.debug("AddPortMapping %s %d failed: %s", protocol.value, port, e)
            return False

    async def close(self, protocol: PortProtocol, port: int) -> bool:
        try:
            return await self.client.delete_port_mapping(port, protocol.value)
        except UPnPError as e:
            self.logger.debug("DeletePortMapping %s %d failed: %s", protocol.value, port, e)
            return False
