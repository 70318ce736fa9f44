"""
IPv4 and CIDR matching for IP allow-lists.

Matching never raises: a malformed address or allow-list entry simply
does not match.
"""

import ipaddress
from typing import Iterable, Optional

_FULL_MASK = 0xFFFFFFFF


def parse_ipv4(value: str) -> Optional[int]:
    """Parse a dotted-quad IPv4 address into its 32-bit integer value."""
    if not value:
        return None
    try:
        return int(ipaddress.IPv4Address(value.strip()))
    except (ipaddress.AddressValueError, ValueError):
        return None


def prefix_mask(prefix_length: int) -> int:
    """Network mask for a prefix length (0 for /0)."""
    if prefix_length == 0:
        return 0
    return (_FULL_MASK << (32 - prefix_length)) & _FULL_MASK


def is_ip_in_cidr(ip: str, cidr: str) -> bool:
    """
    Check whether an address falls inside a CIDR range.

    Examples:
        is_ip_in_cidr("10.0.0.5", "10.0.0.0/24")  -> True
        is_ip_in_cidr("10.0.1.5", "10.0.0.0/24")  -> False
        is_ip_in_cidr("8.8.8.8", "0.0.0.0/0")     -> True
        is_ip_in_cidr("10.0.0.5", "not-an-ip/24") -> False
    """
    network, sep, prefix = cidr.partition("/")
    if not sep or not network or not prefix:
        return False

    try:
        prefix_length = int(prefix)
    except ValueError:
        return False
    if prefix_length < 0 or prefix_length > 32:
        return False

    ip_value = parse_ipv4(ip)
    network_value = parse_ipv4(network)
    if ip_value is None or network_value is None:
        return False

    mask = prefix_mask(prefix_length)
    return (ip_value & mask) == (network_value & mask)


def is_ip_allowed(ip: str, allowed: Iterable[str]) -> bool:
    """
    Check an address against an allow-list of addresses and CIDR ranges.

    An empty allow-list allows nothing.
    """
    for entry in allowed:
        trimmed = entry.strip()
        if not trimmed:
            continue

        if "/" in trimmed:
            if is_ip_in_cidr(ip, trimmed):
                return True
            continue

        if trimmed == ip.strip():
            return True

    return False
