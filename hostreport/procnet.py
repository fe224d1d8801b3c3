"""
Readers for the kernel's socket tables and per-process socket links.

/proc/net/{tcp,tcp6,udp,udp6} rows look like

   sl  local_address rem_address   st tx_queue:rx_queue tr:tm->when retrnsmt   uid  timeout inode
    0: 0100007F:0035 00000000:0000 0A 00000000:00000000 00:00000000 00000000   101        0 21234 ...

Addresses are hex in host byte order, one 32-bit word at a time.
"""
from __future__ import annotations
import ipaddress
import os
import re
import sys
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, List, Optional

import psutil

PROTOCOLS = ("tcp", "tcp6", "udp", "udp6")

TCP_STATES = {
    "01": "ESTABLISHED",
    "02": "SYN_SENT",
    "03": "SYN_RECV",
    "04": "FIN_WAIT1",
    "05": "FIN_WAIT2",
    "06": "TIME_WAIT",
    "07": "CLOSE",
    "08": "CLOSE_WAIT",
    "09": "LAST_ACK",
    "0A": "LISTEN",
    "0B": "CLOSING",
    "0C": "NEW_SYN_RECV",
}
LISTEN = "LISTEN"

_SOCKET_LINK = re.compile(r"^socket:\[(\d+)\]$")


@dataclass(frozen=True)
class SocketEntry:
    protocol: str
    local_address: str
    state: Optional[str]     # tcp only
    inode: int


def _decode_ip(hex_addr: str) -> str:
    raw = bytes.fromhex(hex_addr)
    if sys.byteorder == "little":
        raw = b"".join(raw[i:i + 4][::-1] for i in range(0, len(raw), 4))
    if len(raw) == 4:
        return str(ipaddress.IPv4Address(raw))
    addr = ipaddress.IPv6Address(raw)
    if addr.ipv4_mapped is not None:
        return f"::ffff:{addr.ipv4_mapped}"
    return str(addr)


def format_address(hex_field: str) -> str:
    """'0100007F:0035' -> '127.0.0.1:53'; IPv6 comes back bracketed, '[::]:22'."""
    hex_addr, _, hex_port = hex_field.partition(":")
    ip = _decode_ip(hex_addr)
    port = int(hex_port, 16)
    if ":" in ip:
        return f"[{ip}]:{port}"
    return f"{ip}:{port}"


def parse_socket_table(text: str, protocol: str) -> List[SocketEntry]:
    is_tcp = protocol.startswith("tcp")
    entries: List[SocketEntry] = []

    for line in text.splitlines()[1:]:
        parts = line.split()
        if len(parts) < 10:
            continue
        try:
            local = format_address(parts[1])
            inode = int(parts[9])
        except ValueError:
            continue
        state = TCP_STATES.get(parts[3].upper(), parts[3]) if is_tcp else None
        entries.append(SocketEntry(protocol, local, state, inode))

    return entries


def read_socket_table(protocol: str, proc_root: str = "/proc") -> List[SocketEntry]:
    """Raises OSError when the table cannot be read."""
    path = os.path.join(proc_root, "net", protocol)
    with open(path, "r", encoding="ascii", errors="replace") as fh:
        return parse_socket_table(fh.read(), protocol)


def listening_entries(entries: List[SocketEntry]) -> List[SocketEntry]:
    """TCP counts only LISTEN rows; UDP has no listen state, every row counts."""
    return [e for e in entries if e.state is None or e.state == LISTEN]


# ──────────────────────────────────────────────
# Per-process tables
# ──────────────────────────────────────────────
@contextmanager
def procfs_path(proc_root: str = "/proc") -> Iterator[None]:
    """Point psutil's Linux backend at `proc_root` for the duration of the block."""
    previous = getattr(psutil, "PROCFS_PATH", "/proc")
    psutil.PROCFS_PATH = proc_root
    try:
        yield
    finally:
        psutil.PROCFS_PATH = previous


def list_pids(proc_root: str = "/proc") -> List[int]:
    """Numeric entries of `proc_root`, ascending. Raises OSError if it cannot be listed."""
    return sorted(int(name) for name in os.listdir(proc_root) if name.isdigit())


def socket_inodes(pid: int, proc_root: str = "/proc") -> List[int]:
    """Inodes of every socket the process holds open. Raises OSError if fd/ is unreadable."""
    fd_dir = os.path.join(proc_root, str(pid), "fd")
    inodes: List[int] = []
    for name in os.listdir(fd_dir):
        try:
            target = os.readlink(os.path.join(fd_dir, name))
        except OSError:
            continue   # fd closed between listdir and readlink
        m = _SOCKET_LINK.match(target)
        if m:
            inodes.append(int(m.group(1)))
    return inodes


def read_cgroup_paths(pid: int, proc_root: str = "/proc") -> List[str]:
    path = os.path.join(proc_root, str(pid), "cgroup")
    with open(path, "r", encoding="utf-8", errors="replace") as fh:
        lines = fh.read().splitlines()
    # hierarchy-ID:controller-list:cgroup-path
    return [line.split(":", 2)[2] for line in lines if line.count(":") >= 2]


def container_from_cgroups(paths: List[str]) -> Optional[str]:
    """
    Best-effort container id from cgroup paths:
    text after 'docker/' up to the next '/', or the last segment of a
    'kubepods/' path. None when neither appears.
    """
    for raw in paths:
        path = raw.strip("/")
        if "docker/" in path:
            ident = path.split("docker/", 1)[1].split("/", 1)[0]
            if ident:
                return ident
        if "kubepods/" in path:
            ident = path.rsplit("/", 1)[-1]
            if ident:
                return ident
    return None
