"""Local network interface helpers."""

from __future__ import annotations

import ipaddress
import logging
import socket

import psutil

logger = logging.getLogger(__name__)

# Interfaces with these name prefixes are VPN/tunnel endpoints, not LAN addresses
TUNNEL_PREFIXES = ("tunnel",)


def is_global_ipv6(address: str) -> bool:
    """Return True for a routable IPv6 address.

    Link-local, loopback and unspecified addresses are rejected. Privacy
    (temporary) addresses cannot be told apart from stable ones and are kept.
    """
    try:
        ip = ipaddress.IPv6Address(address.split("%", 1)[0])
    except ValueError:
        return False
    return not (ip.is_link_local or ip.is_loopback or ip.is_unspecified)


def list_global_ipv6_addresses() -> list[str]:
    """List the IPv6 addresses other hosts can reach this machine on.

    Only interfaces that are up and not tunnels are considered; loopback
    addresses are filtered out by address.
    Enumeration errors yield an empty list.
    """
    try:
        stats = psutil.net_if_stats()
        interfaces = psutil.net_if_addrs()
    except (OSError, RuntimeError) as e:
        logger.debug("Could not enumerate network interfaces: %s", e)
        return []

    addresses: list[str] = []
    for name, addrs in interfaces.items():
        stat = stats.get(name)
        if stat is None or not stat.isup:
            continue
        if name.startswith(TUNNEL_PREFIXES):
            continue
        for addr in addrs:
            if addr.family != socket.AF_INET6:
                continue
            if is_global_ipv6(addr.address):
                addresses.append(addr.address.split("%", 1)[0])
    return addresses
