"""Tests for the UPnP IGD client and gateway (mcupnp/nat/upnp.py).

Covers:
- SSDP request building and response parsing
- Device description parsing
- SOAP responses and faults
- UPnPClient port mapping calls
- UPnPGateway boolean contract
"""

from __future__ import annotations

import ipaddress
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from mcupnp.models import PortProtocol, UPnPConfig
from mcupnp.nat.exceptions import UPnPError
from mcupnp.nat.gateway import GatewayClient
from mcupnp.nat.upnp import (
    UPNP_IGD_SERVICE_TYPE,
    UPnPClient,
    UPnPGateway,
    build_msearch_request,
    build_soap_action,
    fetch_device_description,
    is_igd_response,
    is_no_such_entry,
    parse_soap_response,
    parse_ssdp_response,
)

pytestmark = [pytest.mark.unit, pytest.mark.network]

SOAP_OK = """<?xml version="1.0"?>
<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/">
  <s:Body>
    <u:GetExternalIPAddressResponse xmlns:u="urn:schemas-upnp-org:service:WANIPConnection:1">
      <NewExternalIPAddress>203.0.113.7</NewExternalIPAddress>
    </u:GetExternalIPAddressResponse>
  </s:Body>
</s:Envelope>"""

SOAP_FAULT_714 = """<?xml version="1.0"?>
<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/">
  <s:Body>
    <s:Fault>
      <faultcode>s:Client</faultcode>
      <faultstring>UPnPError</faultstring>
      <detail>
        <UPnPError xmlns="urn:schemas-upnp-org:control-1-0">
          <errorCode>714</errorCode>
          <errorDescription>NoSuchEntryInArray</errorDescription>
        </UPnPError>
      </detail>
    </s:Fault>
  </s:Body>
</s:Envelope>"""

DEVICE_DESCRIPTION = """<?xml version="1.0"?>
<root xmlns="urn:schemas-upnp-org:device-1-0">
  <device>
    <deviceType>urn:schemas-upnp-org:device:InternetGatewayDevice:1</deviceType>
    <serviceList>
      <service>
        <serviceType>urn:schemas-upnp-org:service:Layer3Forwarding:1</serviceType>
        <controlURL>/ctl/L3F</controlURL>
      </service>
    </serviceList>
    <deviceList>
      <device>
        <serviceList>
          <service>
            <serviceType>urn:schemas-upnp-org:service:WANIPConnection:1</serviceType>
            <controlURL>/ctl/IPConn</controlURL>
          </service>
        </serviceList>
      </device>
    </deviceList>
  </device>
</root>"""


def _mock_session(status: int, text: str) -> MagicMock:
    """aiohttp.ClientSession stand-in whose get() answers with ``text``."""
    response = MagicMock()
    response.status = status
    response.text = AsyncMock(return_value=text)

    request_cm = MagicMock()
    request_cm.__aenter__ = AsyncMock(return_value=response)
    request_cm.__aexit__ = AsyncMock(return_value=False)

    session = MagicMock()
    session.get = MagicMock(return_value=request_cm)
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=False)
    return session


class TestSSDP:
    """SSDP helpers."""

    def test_msearch_request(self):
        request = build_msearch_request().decode()

        assert request.startswith("M-SEARCH * HTTP/1.1\r\n")
        assert "HOST: 239.255.255.250:1900\r\n" in request
        assert f"ST: {UPNP_IGD_SERVICE_TYPE}\r\n" in request
        assert request.endswith("\r\n\r\n")

    def test_parse_response_lowercases_headers(self):
        raw = (
            b"HTTP/1.1 200 OK\r\n"
            b"LOCATION: http://192.168.1.1:5000/rootDesc.xml\r\n"
            b"ST: urn:schemas-upnp-org:device:InternetGatewayDevice:1\r\n"
            b"USN: uuid:abc\r\n\r\n"
        )
        headers = parse_ssdp_response(raw)

        assert headers["location"] == "http://192.168.1.1:5000/rootDesc.xml"
        assert headers["usn"] == "uuid:abc"
        assert is_igd_response(headers)

    def test_non_igd_response(self):
        assert not is_igd_response({"st": "urn:schemas-upnp-org:device:MediaServer:1"})


class TestSOAP:
    """SOAP request and response handling."""

    def test_build_action(self):
        body = build_soap_action(
            "DeletePortMapping",
            UPNP_IGD_SERVICE_TYPE,
            {"NewExternalPort": "25565", "NewProtocol": "TCP"},
        )

        assert f'<u:DeletePortMapping xmlns:u="{UPNP_IGD_SERVICE_TYPE}">' in body
        assert "<NewExternalPort>25565</NewExternalPort>" in body
        assert "<NewProtocol>TCP</NewProtocol>" in body

    def test_parse_success(self):
        assert parse_soap_response(SOAP_OK, 200) == {
            "NewExternalIPAddress": "203.0.113.7"
        }

    def test_parse_fault_carries_error_code(self):
        with pytest.raises(UPnPError) as exc_info:
            parse_soap_response(SOAP_FAULT_714, 500)

        assert exc_info.value.details == {"error_code": "714"}
        assert "UPnP error code: 714" in str(exc_info.value)
        assert is_no_such_entry(exc_info.value)

    def test_parse_http_error_without_fault(self):
        with pytest.raises(UPnPError, match="HTTP 503"):
            parse_soap_response(SOAP_OK, 503)

    def test_parse_garbage(self):
        with pytest.raises(UPnPError, match="not parseable"):
            parse_soap_response("<<not xml", 200)

    def test_is_no_such_entry(self):
        assert is_no_such_entry(UPnPError("x", {"error_code": "713"}))
        assert not is_no_such_entry(UPnPError("x", {"error_code": "718"}))
        assert is_no_such_entry(UPnPError("SOAP fault: NoSuchEntryInArray"))
        assert not is_no_such_entry(UPnPError("Timeout sending AddPortMapping"))


class TestDeviceDescription:
    """Device description fetching."""

    @pytest.mark.asyncio
    async def test_finds_nested_wan_ip_service(self):
        session = _mock_session(200, DEVICE_DESCRIPTION)
        with patch("mcupnp.nat.upnp.aiohttp.ClientSession", return_value=session):
            info = await fetch_device_description("http://192.168.1.1:5000/rootDesc.xml")

        assert info == {
            "control_url": "http://192.168.1.1:5000/ctl/IPConn",
            "service_type": UPNP_IGD_SERVICE_TYPE,
        }

    @pytest.mark.asyncio
    async def test_http_error(self):
        session = _mock_session(404, "")
        with patch("mcupnp.nat.upnp.aiohttp.ClientSession", return_value=session):
            with pytest.raises(UPnPError, match="HTTP 404"):
                await fetch_device_description("http://192.168.1.1/desc.xml")

    @pytest.mark.asyncio
    async def test_missing_service(self):
        xml = DEVICE_DESCRIPTION.replace("WANIPConnection", "WANCommonInterfaceConfig")
        session = _mock_session(200, xml)
        with patch("mcupnp.nat.upnp.aiohttp.ClientSession", return_value=session):
            with pytest.raises(UPnPError, match="No WANIPConnection"):
                await fetch_device_description("http://192.168.1.1/desc.xml")


class TestUPnPClient:
    """Port mapping actions."""

    @pytest.fixture
    def client(self):
        client = UPnPClient(device_url="http://192.168.1.1/desc.xml", timeout=2.0)
        client.control_url = "http://192.168.1.1/ctl/IPConn"
        return client

    @pytest.mark.asyncio
    async def test_get_external_ip(self, client):
        with patch(
            "mcupnp.nat.upnp.send_soap_action",
            AsyncMock(return_value={"NewExternalIPAddress": "203.0.113.7"}),
        ) as send:
            ip = await client.get_external_ip()

        assert ip == ipaddress.IPv4Address("203.0.113.7")
        send.assert_awaited_once_with(
            "http://192.168.1.1/ctl/IPConn",
            "GetExternalIPAddress",
            UPNP_IGD_SERVICE_TYPE,
            {},
            2.0,
        )

    @pytest.mark.asyncio
    async def test_get_external_ip_empty(self, client):
        with patch("mcupnp.nat.upnp.send_soap_action", AsyncMock(return_value={})):
            with pytest.raises(UPnPError, match="No external IP"):
                await client.get_external_ip()

    @pytest.mark.asyncio
    async def test_add_port_mapping_params(self, client):
        with patch(
            "mcupnp.nat.upnp.send_soap_action", AsyncMock(return_value={})
        ) as send, patch("mcupnp.nat.upnp.get_local_ipv4", return_value="192.168.1.20"):
            assert await client.add_port_mapping(
                25565, 25565, "tcp", description="Minecraft", duration=0
            )

        params = send.await_args.args[3]
        assert send.await_args.args[1] == "AddPortMapping"
        assert params["NewProtocol"] == "TCP"
        assert params["NewInternalClient"] == "192.168.1.20"
        assert params["NewPortMappingDescription"] == "Minecraft"
        assert params["NewLeaseDuration"] == "0"

    @pytest.mark.asyncio
    async def test_delete_missing_mapping_returns_false(self, client):
        with patch(
            "mcupnp.nat.upnp.send_soap_action",
            AsyncMock(side_effect=UPnPError("fault", {"error_code": "714"})),
        ):
            assert await client.delete_port_mapping(25565, "TCP") is False

    @pytest.mark.asyncio
    async def test_delete_other_fault_raises(self, client):
        with patch(
            "mcupnp.nat.upnp.send_soap_action",
            AsyncMock(side_effect=UPnPError("fault", {"error_code": "606"})),
        ):
            with pytest.raises(UPnPError):
                await client.delete_port_mapping(25565, "TCP")

    @pytest.mark.asyncio
    async def test_specific_mapping_lookup(self, client):
        entry = {"NewInternalPort": "25565", "NewInternalClient": "192.168.1.20"}
        with patch("mcupnp.nat.upnp.send_soap_action", AsyncMock(return_value=entry)):
            assert await client.get_specific_port_mapping(25565, "UDP") == entry

        with patch(
            "mcupnp.nat.upnp.send_soap_action",
            AsyncMock(side_effect=UPnPError("fault", {"error_code": "714"})),
        ):
            assert await client.get_specific_port_mapping(25565, "UDP") is None

    @pytest.mark.asyncio
    async def test_discovery_failure_raises(self):
        client = UPnPClient()
        with patch("mcupnp.nat.upnp.discover_upnp_devices", AsyncMock(return_value=[])):
            with pytest.raises(UPnPError, match="Failed to discover"):
                await client.get_external_ip()

    def test_clear_cache_keeps_configured_url(self, client):
        client.clear_cache()

        assert client.control_url is None
        assert client.device_url == "http://192.168.1.1/desc.xml"


class TestUPnPGateway:
    """Boolean gateway contract over UPnPClient."""

    @pytest.fixture
    def client(self):
        client = MagicMock(spec=UPnPClient)
        client.get_external_ip = AsyncMock(
            return_value=ipaddress.IPv4Address("203.0.113.7")
        )
        client.get_specific_port_mapping = AsyncMock(return_value=None)
        client.add_port_mapping = AsyncMock(return_value=True)
        client.delete_port_mapping = AsyncMock(return_value=True)
        return client

    def test_is_gateway_client(self, client):
        assert isinstance(UPnPGateway(client), GatewayClient)

    def test_from_config(self):
        config = UPnPConfig(
            device_url="http://10.0.0.1/desc.xml",
            request_timeout=3.0,
            lease_duration=3600,
        )
        gateway = UPnPGateway.from_config(config)

        assert gateway.client.device_url == "http://10.0.0.1/desc.xml"
        assert gateway.client.timeout == 3.0
        assert gateway.lease_duration == 3600

    @pytest.mark.asyncio
    async def test_available(self, client):
        gateway = UPnPGateway(client)

        assert await gateway.is_available() is True
        assert await gateway.get_external_address() == "203.0.113.7"

    @pytest.mark.asyncio
    async def test_unavailable_clears_cache(self, client):
        client.get_external_ip.side_effect = UPnPError("Failed to discover UPnP device")
        gateway = UPnPGateway(client)

        assert await gateway.is_available() is False
        assert await gateway.get_external_address() is None
        client.clear_cache.assert_called_once()

    @pytest.mark.asyncio
    async def test_is_mapped(self, client):
        gateway = UPnPGateway(client)
        assert await gateway.is_mapped(PortProtocol.TCP, 25565) is False

        client.get_specific_port_mapping.return_value = {"NewInternalPort": "25565"}
        assert await gateway.is_mapped(PortProtocol.TCP, 25565) is True

        client.get_specific_port_mapping.side_effect = UPnPError("timeout")
        assert await gateway.is_mapped(PortProtocol.TCP, 25565) is False

    @pytest.mark.asyncio
    async def test_open_uses_lease_and_description(self, client):
        gateway = UPnPGateway(client, lease_duration=7200)

        assert await gateway.open(PortProtocol.UDP, 19132, "Minecraft") is True
        client.add_port_mapping.assert_awaited_once_with(
            19132, 19132, "UDP", description="Minecraft", duration=7200
        )

    @pytest.mark.asyncio
    async def test_open_failure_is_false(self, client):
        client.add_port_mapping.side_effect = UPnPError("ConflictInMappingEntry")

        assert await UPnPGateway(client).open(PortProtocol.TCP, 25565, "d") is False

    @pytest.mark.asyncio
    async def test_close(self, client):
        gateway = UPnPGateway(client)
        assert await gateway.close(PortProtocol.TCP, 25565) is True

        client.delete_port_mapping.side_effect = UPnPError("timeout")
        assert await gateway.close(PortProtocol.TCP, 25565) is False
