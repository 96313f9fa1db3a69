"""Lexical SSRF guard for user-supplied URLs.

``is_safe_url`` only looks at the URL text. It never resolves DNS, so a public
looking hostname that resolves to a private address is not caught here.
"""
import ipaddress
import re
import socket
from typing import Optional, Union
from urllib.parse import urlsplit

ALLOWED_SCHEMES = {"http", "https"}
BLOCKED_SCHEMES = {"javascript", "data"}
BLOCKED_HOSTNAMES = {"localhost", "127.0.0.1", "::1"}

BLOCKED_NETWORKS = [
    ipaddress.ip_network(net)
    for net in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "224.0.0.0/4",
        "240.0.0.0/4",
        "::1/128",
        "::/128",
        "fc00::/7",
        "fe80::/10",
    )
]

# Decimal, hex and short-dotted IPv4 spellings ("2130706433", "0x7f.1", "127.1")
_LEGACY_IPV4 = re.compile(r"^(0x[0-9a-f]+|\d+)(\.(0x[0-9a-f]+|\d+)){0,3}$")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


def _parse_ip(hostname: str) -> Optional[IPAddress]:
    try:
        return ipaddress.ip_address(hostname)
    except ValueError:
        pass
    if _LEGACY_IPV4.match(hostname):
        try:
            return ipaddress.IPv4Address(socket.inet_aton(hostname))
        except OSError:
            return None
    return None


def is_blocked_address(address: IPAddress) -> bool:
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped:
        address = address.ipv4_mapped
    return any(address in network for network in BLOCKED_NETWORKS)


def is_safe_url(candidate: str) -> bool:
    """Return True when ``candidate`` is an absolute http(s) URL to a public host."""
    if not isinstance(candidate, str) or not candidate.strip():
        return False

    try:
        parsed = urlsplit(candidate.strip())
        hostname = parsed.hostname
    except ValueError:
        return False

    scheme = parsed.scheme.lower()
    if scheme in BLOCKED_SCHEMES or scheme not in ALLOWED_SCHEMES:
        return False
    if not hostname:
        return False
    # user:pass@host hides the real target from naive readers
    if parsed.username is not None or parsed.password is not None:
        return False

    hostname = hostname.lower().rstrip(".")
    if hostname in BLOCKED_HOSTNAMES or hostname.endswith(".localhost"):
        return False

    address = _parse_ip(hostname)
    if address is not None and is_blocked_address(address):
        return False

    return True
