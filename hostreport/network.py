from __future__ import annotations
import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Tuple

import psutil

from .models import CollectionContext, CollectorMetadata, Section
from .procnet import (
    PROTOCOLS, SocketEntry, container_from_cgroups, list_pids, listening_entries,
    procfs_path, read_cgroup_paths, read_socket_table, socket_inodes,
)
from .registry import Collector, CollectorError

log = logging.getLogger(__name__)

MAX_SOCKET_SAMPLES = 20

SERVICE_TABLE: Dict[Tuple[str, int], str] = {
    ("tcp", 21): "ftp",
    ("tcp", 22): "ssh",
    ("tcp", 23): "telnet",
    ("tcp", 25): "smtp",
    ("tcp", 53): "dns",
    ("udp", 53): "dns",
    ("tcp", 80): "http",
    ("tcp", 110): "pop3",
    ("tcp", 143): "imap",
    ("tcp", 389): "ldap",
    ("tcp", 443): "https",
    ("tcp", 445): "smb",
    ("tcp", 465): "smtps",
    ("tcp", 587): "submission",
    ("tcp", 993): "imaps",
    ("tcp", 995): "pop3s",
    ("tcp", 1433): "mssql",
    ("tcp", 1521): "oracle",
    ("tcp", 2049): "nfs",
    ("udp", 2049): "nfs",
    ("tcp", 2375): "docker",
    ("tcp", 3306): "mysql",
    ("tcp", 3389): "rdp",
    ("tcp", 5432): "postgresql",
    ("tcp", 5900): "vnc",
    ("tcp", 6379): "redis",
    ("tcp", 8080): "http-alt",
    ("tcp", 8443): "https-alt",
}

INSECURE_SERVICES = frozenset({
    "telnet", "ftp", "pop3", "imap", "smtp", "mysql", "redis", "rdp", "vnc",
})

WILDCARD_PREFIXES = ("0.0.0.0:", ":::", "[::]:", "[::ffff:0.0.0.0]:", "::ffff:0.0.0.0:")

RULE_WILDCARD = "wildcard_listener"
RULE_LEGACY = "legacy_protocol"


# ──────────────────────────────────────────────
# Body types
# ──────────────────────────────────────────────
@dataclass(frozen=True)
class InterfaceInfo:
    name: str
    rx_bytes: int
    tx_bytes: int
    rx_packets: int
    tx_packets: int


@dataclass
class ListenerCounts:
    tcp: int = 0
    tcp6: int = 0
    udp: int = 0
    udp6: int = 0

    def total(self) -> int:
        return self.tcp + self.tcp6 + self.udp + self.udp6


@dataclass(frozen=True)
class SocketProcessInfo:
    pid: int
    command: str
    uid: Optional[int]
    container: Optional[str]


@dataclass(frozen=True)
class SocketSample:
    protocol: str
    local_address: str
    state: Optional[str]
    processes: List[SocketProcessInfo]
    service: Optional[str]


@dataclass(frozen=True)
class SocketReference:
    protocol: str
    local_address: str
    service: Optional[str]
    container: Optional[str]
    pid: Optional[int]


@dataclass
class ListenerProcessGroup:
    pid: int
    command: str
    uid: Optional[int]
    socket_count: int
    protocols: List[str]
    local_addresses: List[str]


@dataclass
class ListenerContainerGroup:
    container: Optional[str]
    socket_count: int
    process_count: int
    processes: List[ListenerProcessGroup]


@dataclass
class ListenerInsight:
    rule: str
    severity: str
    message: str
    sockets: List[SocketReference]


@dataclass
class ListenerSnapshot:
    counts: ListenerCounts = field(default_factory=ListenerCounts)
    samples: List[SocketSample] = field(default_factory=list)
    groups: List[ListenerContainerGroup] = field(default_factory=list)
    insights: List[ListenerInsight] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "counts": asdict(self.counts),
            "samples": [asdict(s) for s in self.samples],
            "groups": [asdict(g) for g in self.groups],
            "insights": [asdict(i) for i in self.insights],
        }


# ──────────────────────────────────────────────
# Classification helpers
# ──────────────────────────────────────────────
def extract_port(address: str) -> Optional[int]:
    _, sep, port = address.rpartition(":")
    if not sep:
        return None
    try:
        value = int(port)
    except ValueError:
        return None
    return value if 0 <= value <= 65535 else None


def classify_service(protocol: str, local_address: str) -> Optional[str]:
    port = extract_port(local_address)
    if port is None:
        return None
    # tcp6/udp6 share the well-known ports of their v4 family
    family = protocol.lower().rstrip("6")
    return SERVICE_TABLE.get((family, port))


def is_wildcard_address(address: str) -> bool:
    return address.startswith(WILDCARD_PREFIXES)


# ──────────────────────────────────────────────
# Interfaces
# ──────────────────────────────────────────────
def gather_interfaces(proc_root: str = "/proc") -> List[InterfaceInfo]:
    try:
        with procfs_path(proc_root):
            stats = psutil.net_io_counters(pernic=True)
    except (OSError, psutil.Error) as e:
        raise CollectorError(f"failed to read network interfaces: {e}") from e

    interfaces = [
        InterfaceInfo(
            name=name,
            rx_bytes=int(c.bytes_recv),
            tx_bytes=int(c.bytes_sent),
            rx_packets=int(c.packets_recv),
            tx_packets=int(c.packets_sent),
        )
        for name, c in (stats or {}).items()
    ]
    if not interfaces:
        raise CollectorError("no network interface data available")
    interfaces.sort(key=lambda i: i.name)
    return interfaces


# ──────────────────────────────────────────────
# Socket inode → owning processes
# ──────────────────────────────────────────────
def _process_identity(pid: int) -> Tuple[str, Optional[int]]:
    """(command, real uid) from psutil; '?' and None for whatever it can't tell."""
    try:
        proc = psutil.Process(pid)
    except (psutil.Error, OSError, ValueError):
        return "?", None

    try:
        command = proc.name() or "?"
    except (psutil.Error, OSError):
        command = "?"
    try:
        uid: Optional[int] = int(proc.uids().real)
    except (psutil.Error, OSError, AttributeError):
        uid = None
    return command, uid


def build_socket_process_map(proc_root: str = "/proc") -> Dict[int, List[SocketProcessInfo]]:
    """
    One inode may map to several processes (shared or inherited sockets).
    Pids, fd links, cgroups and psutil's view of each process all come
    from `proc_root`. Processes that exit or deny access mid-scan are skipped.
    """
    by_inode: Dict[int, List[SocketProcessInfo]] = defaultdict(list)

    try:
        pids = list_pids(proc_root)
    except OSError as e:
        log.info("Process scan aborted: %s", e)
        return {}

    with procfs_path(proc_root):
        for pid in pids:
            try:
                inodes = socket_inodes(pid, proc_root)
            except OSError:
                continue
            if not inodes:
                continue

            command, uid = _process_identity(pid)
            try:
                container = container_from_cgroups(read_cgroup_paths(pid, proc_root))
            except OSError:
                container = None

            info = SocketProcessInfo(pid=pid, command=command, uid=uid, container=container)
            for inode in inodes:
                by_inode[inode].append(info)

    return dict(by_inode)


# ──────────────────────────────────────────────
# Listener sampling, grouping, insights
# ──────────────────────────────────────────────
def gather_listeners(
    tables: Mapping[str, Optional[List[SocketEntry]]],
    process_map: Mapping[int, List[SocketProcessInfo]],
    max_samples: int = MAX_SOCKET_SAMPLES,
) -> ListenerSnapshot:
    """
    Counts are exact. Samples are the first `max_samples` listeners taken
    in tcp, tcp6, udp, udp6 order, so a busy tcp table can crowd out the
    rest. Grouping and insights only see the samples.
    A table mapped to None was unreadable and contributes nothing.
    """
    counts = ListenerCounts()
    samples: List[SocketSample] = []

    for proto in PROTOCOLS:
        entries = tables.get(proto)
        if entries is None:
            continue
        listening = listening_entries(entries)
        setattr(counts, proto, len(listening))

        for entry in listening[:max(0, max_samples - len(samples))]:
            samples.append(SocketSample(
                protocol=proto,
                local_address=entry.local_address,
                state=entry.state,
                processes=list(process_map.get(entry.inode, ())),
                service=classify_service(proto, entry.local_address),
            ))

    return ListenerSnapshot(
        counts=counts,
        samples=samples,
        groups=build_listener_groups(samples),
        insights=derive_insights(samples),
    )


def build_listener_groups(samples: List[SocketSample]) -> List[ListenerContainerGroup]:
    by_pid: Dict[int, dict] = {}

    for sample in samples:
        for proc in sample.processes:
            g = by_pid.get(proc.pid)
            if g is None:
                g = by_pid[proc.pid] = {
                    "proc": proc, "sockets": 0,
                    "protocols": set(), "addresses": set(),
                }
            g["sockets"] += 1
            g["protocols"].add(sample.protocol)
            g["addresses"].add(sample.local_address)

    by_container: Dict[Optional[str], List[ListenerProcessGroup]] = defaultdict(list)
    for pid, g in by_pid.items():
        proc: SocketProcessInfo = g["proc"]
        by_container[proc.container].append(ListenerProcessGroup(
            pid=pid,
            command=proc.command,
            uid=proc.uid,
            socket_count=g["sockets"],
            protocols=sorted(g["protocols"]),
            local_addresses=sorted(g["addresses"]),
        ))

    groups: List[ListenerContainerGroup] = []
    for container, procs in by_container.items():
        procs.sort(key=lambda p: (-p.socket_count, p.pid))
        groups.append(ListenerContainerGroup(
            container=container,
            socket_count=sum(p.socket_count for p in procs),
            process_count=len(procs),
            processes=procs,
        ))

    groups.sort(key=lambda g: (-g.socket_count, g.container or ""))
    return groups


def _reference(sample: SocketSample) -> SocketReference:
    container = next((p.container for p in sample.processes if p.container), None)
    return SocketReference(
        protocol=sample.protocol,
        local_address=sample.local_address,
        service=sample.service,
        container=container,
        pid=sample.processes[0].pid if sample.processes else None,
    )


_RULES: Dict[str, Tuple[str, str, Callable[[SocketSample], bool]]] = {
    RULE_WILDCARD: (
        "warning", "Listener bound to all interfaces",
        lambda s: is_wildcard_address(s.local_address),
    ),
    RULE_LEGACY: (
        "warning", "Legacy or insecure protocol exposed",
        lambda s: s.service in INSECURE_SERVICES,
    ),
}


def derive_insights(samples: List[SocketSample]) -> List[ListenerInsight]:
    """At most one insight per rule, emitted in rule-name order."""
    insights: List[ListenerInsight] = []
    for rule in sorted(_RULES):
        severity, message, matches = _RULES[rule]
        refs = [_reference(s) for s in samples if matches(s)]
        if refs:
            insights.append(ListenerInsight(rule, severity, message, refs))
    return insights


# ──────────────────────────────────────────────
# Collector
# ──────────────────────────────────────────────
class NetworkCollector(Collector):
    def __init__(self, proc_root: str = "/proc", max_samples: int = MAX_SOCKET_SAMPLES):
        self.proc_root = proc_root
        self.max_samples = max_samples

    def metadata(self) -> CollectorMetadata:
        return CollectorMetadata(
            id="network",
            title="Network Overview",
            description="Interfaces and listening sockets",
        )

    def _read_table(self, proto: str) -> Tuple[str, Optional[List[SocketEntry]], Optional[str]]:
        try:
            return proto, read_socket_table(proto, self.proc_root), None
        except OSError as e:
            log.info("Socket table %s unreadable: %s", proto, e)
            return proto, None, f"Failed to read {self.proc_root}/net/{proto}: {e}"

    def collect(self, ctx: CollectionContext) -> Section:
        meta = self.metadata()
        interfaces = gather_interfaces(self.proc_root)

        # table reads and the process scan are independent of each other
        with ThreadPoolExecutor(max_workers=len(PROTOCOLS) + 1) as pool:
            proc_future = pool.submit(build_socket_process_map, self.proc_root)
            table_results = list(pool.map(self._read_table, PROTOCOLS))
            process_map = proc_future.result()

        tables = {proto: entries for proto, entries, _ in table_results}
        notes = [note for _, _, note in table_results if note]

        listeners = gather_listeners(tables, process_map, self.max_samples)
        total = listeners.counts.total()
        if total > len(listeners.samples):
            notes.append(
                f"Showing {len(listeners.samples)} of {total} listening sockets; "
                f"samples are taken in {', '.join(PROTOCOLS)} order and grouping "
                f"and insights cover the samples only"
            )

        body = {
            "interfaces": [asdict(i) for i in interfaces],
            "listeners": listeners.to_dict(),
        }
        summary = f"{len(interfaces)} interfaces, {total} listening sockets"

        if all(entries is None for entries in tables.values()):
            return Section.degraded(meta.id, meta.title,
                                    "listening socket tables unavailable; " + summary,
                                    body, notes)
        return Section.success(meta.id, meta.title, body, summary=summary, notes=notes)
