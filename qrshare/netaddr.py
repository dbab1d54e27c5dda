import fcntl
import ipaddress
import logging
import os
import socket
import struct
from dataclasses import dataclass
from typing import Protocol
from urllib.parse import quote

from .errors import BindError

logger = logging.getLogger(__name__)

SIOCGIFADDR = 0x8915
SYSFS_NET = "/sys/class/net"

# Interface name prefixes tried first, in this order.
PREFERRED_PREFIXES = ("eth", "en", "wl")


class NetworkInterfaceProvider(Protocol):
    def addresses(self) -> list[tuple[str, str]]:
        """Return (interface name, IPv4 address) pairs."""
        ...


# ----------------------------
# Interface enumeration (Linux)
# ----------------------------

def _get_iface_ipv4_linux(ifname: str) -> str | None:
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        ifreq = struct.pack("256s", ifname.encode("utf-8")[:15])
        res = fcntl.ioctl(s.fileno(), SIOCGIFADDR, ifreq)
        return socket.inet_ntoa(res[20:24])
    except OSError:
        # no IPv4 address assigned, or interface is down
        return None
    finally:
        s.close()


class SysfsInterfaceProvider:
    def __init__(self, root: str = SYSFS_NET) -> None:
        self.root = root

    def addresses(self) -> list[tuple[str, str]]:
        try:
            names = sorted(os.listdir(self.root))
        except OSError:
            return []
        out: list[tuple[str, str]] = []
        for ifname in names:
            ip = _get_iface_ipv4_linux(ifname)
            if ip:
                out.append((ifname, ip))
        return out


def _guess_fallback_ip() -> str | None:
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(("8.8.8.8", 80))  # no packets need to be sent
        return s.getsockname()[0]
    except OSError:
        return None
    finally:
        s.close()


# ----------------------------
# Address selection
# ----------------------------

def is_lan_ipv4(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip)
    except ValueError:
        return False
    if addr.version != 4:
        return False
    return not (
        addr.is_unspecified
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_multicast
        or addr == ipaddress.IPv4Address("255.255.255.255")
    )


def _preference(item: tuple[str, str]) -> tuple[int, str]:
    ifname = item[0]
    for rank, prefix in enumerate(PREFERRED_PREFIXES):
        if ifname.startswith(prefix):
            return rank, ifname
    return len(PREFERRED_PREFIXES), ifname


def select_lan_address(candidates: list[tuple[str, str]]) -> str | None:
    usable = [c for c in candidates if is_lan_ipv4(c[1])]
    if not usable:
        return None
    usable.sort(key=_preference)
    return usable[0][1]


# ----------------------------
# Binding
# ----------------------------

@dataclass(frozen=True)
class BoundAddress:
    host: str
    port: int

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def url_for(self, route: str) -> str:
        return f"{self.base_url}/{quote(route)}"


def bind_listener(host: str, port: int, backlog: int = 128) -> tuple[BoundAddress, socket.socket]:
    """Bind and listen on (host, port). Port 0 lets the OS pick one."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(backlog)
    except OSError as e:
        sock.close()
        raise BindError(f"cannot listen on {host}:{port}: {e.strerror or e}") from e
    bound_host, bound_port = sock.getsockname()[:2]
    return BoundAddress(bound_host, bound_port), sock


class AddressResolver:
    """Picks the LAN address to advertise and opens the listener on it, once."""

    def __init__(self, provider: NetworkInterfaceProvider | None = None) -> None:
        self.provider = provider or SysfsInterfaceProvider()
        self.bound: BoundAddress | None = None

    def select_host(self) -> str:
        candidates = self.provider.addresses()
        host = select_lan_address(candidates)
        if host is not None:
            return host

        fallback = _guess_fallback_ip()
        if fallback and is_lan_ipv4(fallback):
            logger.debug("no usable interface in %s; using route probe %s", candidates, fallback)
            return fallback
        raise BindError("no LAN-reachable IPv4 address found")

    def resolve(self, port: int = 0) -> tuple[BoundAddress, socket.socket]:
        if self.bound is not None:
            raise RuntimeError(f"listener already bound at {self.bound.host}:{self.bound.port}")
        address, sock = bind_listener(self.select_host(), port)
        self.bound = address
        return address, sock
