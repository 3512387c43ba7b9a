"""Outbound URL guard against server-side request forgery."""

import ipaddress
import socket
from typing import Callable, Iterable, List, Optional, Set, Tuple, Union
from urllib.parse import urlsplit

from ..core.exceptions import ExecutorError
from ..core.logging import get_logger

logger = get_logger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

ALLOWED_SCHEMES = {"http", "https"}

BLOCKED_HOSTNAMES = {
    "localhost",
    "localhost.localdomain",
    "metadata.google.internal",
    "metadata.goog",
    "kubernetes.default",
    "kubernetes.default.svc",
    "kubernetes.default.svc.cluster.local",
}

BLOCKED_PORTS = {22, 25, 3306, 5432, 6379, 27017, 9200, 11211}

BLOCKED_NETWORKS = [
    ipaddress.ip_network(cidr) for cidr in (
        "0.0.0.0/8",
        "10.0.0.0/8",
        "100.64.0.0/10",
        "127.0.0.0/8",
        "169.254.0.0/16",
        "172.16.0.0/12",
        "192.0.0.0/24",
        "192.168.0.0/16",
        "198.18.0.0/15",
        "::1/128",
        "::/128",
        "fc00::/7",
        "fe80::/10",
    )
]

Resolver = Callable[..., List[Tuple]]


def is_blocked_address(address: IPAddress) -> bool:
    """True when the address is loopback, private, link-local or otherwise internal."""
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    if any(address in network for network in BLOCKED_NETWORKS if network.version == address.version):
        return True
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_multicast
        or address.is_reserved
        or address.is_unspecified
    )


class SSRFGuard:
    """Validates outbound URLs, including every address the host resolves to.

    Allow-list entries are either hostnames (exact match, case-insensitive)
    or CIDR ranges; an allow-listed host or address skips the internal-range
    checks but never the scheme check.
    """

    def __init__(self, allowlist: Optional[Iterable[str]] = None, resolver: Optional[Resolver] = None):
        self._allowed_hosts: Set[str] = set()
        self._allowed_networks: List[IPNetwork] = []
        for entry in allowlist or []:
            entry = entry.strip()
            if not entry:
                continue
            try:
                self._allowed_networks.append(ipaddress.ip_network(entry, strict=False))
            except ValueError:
                self._allowed_hosts.add(entry.lower().rstrip("."))
        self._resolver = resolver

    def _resolve(self, hostname: str, port: int) -> List[IPAddress]:
        resolver = self._resolver or socket.getaddrinfo
        try:
            infos = resolver(hostname, port, type=socket.SOCK_STREAM)
        except socket.gaierror as e:
            raise ExecutorError(f"Could not resolve host '{hostname}': {e}", error_category="network")
        addresses = []
        for info in infos:
            sockaddr = info[4]
            # IPv6 sockaddr may carry a scope id ("fe80::1%eth0")
            addresses.append(ipaddress.ip_address(str(sockaddr[0]).split("%")[0]))
        if not addresses:
            raise ExecutorError(f"Host '{hostname}' did not resolve to any address", error_category="network")
        return addresses

    def _address_allowed(self, address: IPAddress) -> bool:
        return any(address in network for network in self._allowed_networks if network.version == address.version)

    def check(self, url: str) -> str:
        """
        Validate a URL for outbound use.

        Args:
            url: Absolute URL to validate

        Returns:
            The lowercased hostname

        Raises:
            ExecutorError: With category "security" (or "validation" for
                malformed URLs, "network" for unresolvable hosts)
        """
        if not url or not isinstance(url, str):
            raise ExecutorError("Invalid URL: empty", error_category="validation")
        try:
            parts = urlsplit(url.strip())
            port = parts.port
        except ValueError as e:
            raise ExecutorError(f"Invalid URL: {e}", error_category="validation")

        scheme = (parts.scheme or "").lower()
        if not scheme or not parts.netloc:
            raise ExecutorError(f"Invalid URL: '{url}'", error_category="validation")
        if scheme not in ALLOWED_SCHEMES:
            raise ExecutorError(f"Protocol not allowed: {scheme}", error_category="security")

        hostname = (parts.hostname or "").lower().rstrip(".")
        if not hostname:
            raise ExecutorError(f"Invalid URL: '{url}' has no host", error_category="validation")

        if hostname in self._allowed_hosts:
            return hostname

        if hostname in BLOCKED_HOSTNAMES or hostname.endswith(".localhost"):
            raise ExecutorError(f"Hostname '{hostname}' is not allowed", error_category="security")

        if port is not None and port in BLOCKED_PORTS:
            raise ExecutorError(f"Access to port {port} is not allowed", error_category="security")

        effective_port = port or (443 if scheme == "https" else 80)
        try:
            addresses = [ipaddress.ip_address(hostname)]
        except ValueError:
            addresses = self._resolve(hostname, effective_port)

        for address in addresses:
            if self._address_allowed(address):
                continue
            if is_blocked_address(address):
                logger.warning(f"Blocked outbound request to {hostname} ({address})")
                raise ExecutorError(
                    f"Address {address} for host '{hostname}' is in a private/internal range",
                    error_category="security"
                )
        return hostname
