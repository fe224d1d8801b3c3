from __future__ import annotations
import logging
import os
import platform
import shutil
import subprocess
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import psutil

from .models import CollectionContext, CollectorMetadata, Section
from .procnet import procfs_path
from .registry import Collector, CollectorError

log = logging.getLogger(__name__)


# ──────────────────────────────────────────────
# OsCollector – /etc/os-release + uname
# ──────────────────────────────────────────────
def parse_os_release(text: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        out[key.strip().lower()] = value
    return out


class OsCollector(Collector):
    def __init__(self, os_release_path: str = "/etc/os-release"):
        self.os_release_path = os_release_path

    def metadata(self) -> CollectorMetadata:
        return CollectorMetadata("os", "Operating System", "Details from /etc/os-release and uname")

    def collect(self, ctx: CollectionContext) -> Section:
        try:
            fields = parse_os_release(Path(self.os_release_path).read_text(encoding="utf-8"))
        except OSError as e:
            raise CollectorError(f"cannot read {self.os_release_path}: {e}") from e

        uname = platform.uname()
        os_release: Dict[str, Any] = {
            "pretty_name": fields.get("pretty_name") or fields.get("name") or "Linux",
            "name": fields.get("name") or "Linux",
        }
        for key in ("version", "version_id"):
            if fields.get(key):
                os_release[key] = fields[key]
        id_like = fields.get("id_like", "").split()
        if id_like:
            os_release["id_like"] = id_like

        body = {
            "os_release": os_release,
            "kernel": {
                "release": uname.release,
                "version": uname.version,
                "machine": uname.machine,
            },
        }
        summary = f"{os_release['pretty_name']} (kernel {uname.release})"
        return Section.success("os", "Operating System", body, summary=summary)


# ──────────────────────────────────────────────
# ProcCollector – load, memory, cgroup limits
# ──────────────────────────────────────────────
# cgroup v1 reports "no limit" as a page-rounded LONG_MAX
_CGROUP_V1_UNLIMITED = 1 << 60


def _read_int(path: Path) -> Optional[int]:
    try:
        raw = path.read_text(encoding="ascii").strip()
    except OSError:
        return None
    if not raw or raw == "max":
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def read_cgroup_memory(cgroup_root: str = "/sys/fs/cgroup") -> Optional[Dict[str, int]]:
    """Limit and usage of the cgroup we run in, or None when unlimited or unknown."""
    root = Path(cgroup_root)

    limit = _read_int(root / "memory.max")
    usage = _read_int(root / "memory.current")
    if limit is None or usage is None:
        limit = _read_int(root / "memory" / "memory.limit_in_bytes")
        usage = _read_int(root / "memory" / "memory.usage_in_bytes")
        if limit is not None and limit >= _CGROUP_V1_UNLIMITED:
            limit = None

    if limit is None or usage is None or limit <= 0:
        return None
    return {"limit_bytes": limit, "usage_bytes": usage}


class ProcCollector(Collector):
    def __init__(self, cgroup_root: str = "/sys/fs/cgroup", proc_root: str = "/proc"):
        self.cgroup_root = cgroup_root
        self.proc_root = proc_root

    def metadata(self) -> CollectorMetadata:
        return CollectorMetadata("proc", "Processes and Resources", "Load average and memory")

    def collect(self, ctx: CollectionContext) -> Section:
        with procfs_path(self.proc_root):
            return self._sample()

    def _sample(self) -> Section:
        notes: List[str] = []

        loadavg: Optional[Dict[str, float]] = None
        try:
            one, five, fifteen = psutil.getloadavg()
            loadavg = {"one": float(one), "five": float(five), "fifteen": float(fifteen)}
        except (OSError, AttributeError) as e:
            notes.append(f"Load average unavailable: {e}")

        host: Optional[Dict[str, Any]] = None
        try:
            vm = psutil.virtual_memory()
            host = {
                "total_bytes": int(vm.total),
                "available_bytes": int(vm.available),
                "usage_ratio": (vm.total - vm.available) / vm.total if vm.total else None,
            }
        except (OSError, psutil.Error) as e:
            notes.append(f"Host memory unavailable: {e}")

        swap: Optional[Dict[str, int]] = None
        try:
            sm = psutil.swap_memory()
            swap = {"total_bytes": int(sm.total), "free_bytes": int(sm.free)}
        except (OSError, psutil.Error, RuntimeError) as e:
            notes.append(f"Swap information unavailable: {e}")

        if loadavg is None and host is None:
            raise CollectorError("unable to read load average or memory statistics")

        try:
            process_count: Optional[int] = len(psutil.pids())
        except (OSError, psutil.Error):
            process_count = None

        body = {
            "loadavg": loadavg,
            "memory": {
                "host": host,
                "cgroup": read_cgroup_memory(self.cgroup_root),
                "swap": swap,
            },
            "process_count": process_count,
        }
        summary = f"LoadAvg 1m: {loadavg['one']:.2f}" if loadavg else "LoadAvg unavailable"
        return Section.success("proc", "Processes and Resources", body, summary=summary, notes=notes)


# ──────────────────────────────────────────────
# StorageCollector – mounted filesystems
# ──────────────────────────────────────────────
PSEUDO_FS = {
    "proc", "sysfs", "devtmpfs", "devpts", "tmpfs", "securityfs", "cgroup", "cgroup2",
    "pstore", "bpf", "tracefs", "debugfs", "mqueue", "hugetlbfs", "configfs", "fusectl",
    "autofs", "binfmt_misc", "rpc_pipefs", "nsfs", "overlay", "squashfs", "efivarfs",
    "ramfs", "fuse.gvfsd-fuse", "fuse.portal", "selinuxfs",
}
PSEUDO_PREFIXES = ("/proc", "/sys", "/dev", "/run")


def is_pseudo_mount(mount_point: str, fs_type: str) -> bool:
    if fs_type in PSEUDO_FS:
        return True
    return any(mount_point == p or mount_point.startswith(p + "/") for p in PSEUDO_PREFIXES)


def _inode_usage(mount_point: str) -> Tuple[Optional[int], Optional[int], Optional[float]]:
    try:
        st = os.statvfs(mount_point)
    except OSError:
        return None, None, None
    if st.f_files <= 0:
        return None, None, None     # btrfs and friends do not report inodes
    used = st.f_files - st.f_ffree
    return int(st.f_files), int(used), used / st.f_files


def mount_usage(part) -> Dict[str, Any]:
    """Usage document for one psutil partition. Raises OSError if the mount can't be stat'ed."""
    usage = psutil.disk_usage(part.mountpoint)
    total = int(usage.total)
    inodes_total, inodes_used, inodes_ratio = _inode_usage(part.mountpoint)
    return {
        "mount_point": part.mountpoint,
        "device": part.device,
        "fs_type": part.fstype,
        "read_only": "ro" in (part.opts or "").split(","),
        "operational": total > 0,
        "total_bytes": total,
        "used_bytes": int(usage.used),
        "available_bytes": int(usage.free),
        "usage_ratio": usage.used / total if total > 0 else None,
        "inodes_total": inodes_total,
        "inodes_used": inodes_used,
        "inodes_usage_ratio": inodes_ratio,
    }


class StorageCollector(Collector):
    def metadata(self) -> CollectorMetadata:
        return CollectorMetadata("storage", "Storage Overview", "Filesystem usage across mounted volumes")

    def collect(self, ctx: CollectionContext) -> Section:
        try:
            partitions = psutil.disk_partitions(all=True)
        except (OSError, psutil.Error) as e:
            raise CollectorError(f"cannot list mounted filesystems: {e}") from e

        seen = set()
        operating: List[Dict[str, Any]] = []
        pseudo: List[Dict[str, Any]] = []
        notes: List[str] = []

        for part in sorted(partitions, key=lambda p: p.mountpoint):
            if part.mountpoint in seen:
                continue
            seen.add(part.mountpoint)

            if is_pseudo_mount(part.mountpoint, part.fstype):
                pseudo.append({"mount_point": part.mountpoint, "fs_type": part.fstype,
                               "device": part.device})
                continue
            try:
                operating.append(mount_usage(part))
            except OSError as e:
                notes.append(f"Failed to read usage for {part.mountpoint}: {e}")

        if not operating:
            return Section.degraded(
                "storage", "Storage Overview", "no filesystem usage information available",
                {"operating_mounts": [], "pseudo_mounts": pseudo, "totals": {}}, notes,
            )

        totals = {
            "total_bytes": sum(m["total_bytes"] for m in operating),
            "used_bytes": sum(m["used_bytes"] for m in operating),
            "available_bytes": sum(m["available_bytes"] for m in operating),
        }
        ratios = [m["usage_ratio"] for m in operating if m["usage_ratio"] is not None]
        average = sum(ratios) / len(ratios) if ratios else 0.0

        body = {"operating_mounts": operating, "pseudo_mounts": pseudo, "totals": totals}
        summary = f"{len(operating)} mounts, {average * 100:.1f}% average usage"
        return Section.success("storage", "Storage Overview", body, summary=summary, notes=notes)


# ──────────────────────────────────────────────
# ContainersCollector – installed container runtimes
# ──────────────────────────────────────────────
RUNTIMES: List[Tuple[str, List[str]]] = [
    ("docker", ["--version"]),
    ("podman", ["--version"]),
    ("nerdctl", ["--version"]),
    ("ctr", ["version"]),
]


def first_line(text: str) -> Optional[str]:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return None


class ContainersCollector(Collector):
    def __init__(self, timeout: float = 3.0):
        self.timeout = timeout

    def metadata(self) -> CollectorMetadata:
        return CollectorMetadata("containers", "Container Runtimes",
                                 "Docker, Podman and containerd clients")

    def _probe(self, name: str, args: List[str], notes: List[str]) -> Optional[Dict[str, Any]]:
        binary = shutil.which(name)
        if not binary:
            return None
        try:
            proc = subprocess.run(
                [binary, *args],
                capture_output=True, text=True, timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            notes.append(f"{name} did not answer within {self.timeout:g}s")
            return None
        except OSError as e:
            notes.append(f"{name} could not be executed: {e}")
            return None
        if proc.returncode != 0:
            log.debug("%s exited with %d", name, proc.returncode)
            return None
        return {"name": name, "path": binary, "version": first_line(proc.stdout)}

    def collect(self, ctx: CollectionContext) -> Section:
        notes: List[str] = []
        runtimes = [r for r in (self._probe(n, a, notes) for n, a in RUNTIMES) if r]

        if runtimes:
            summary = f"{len(runtimes)} runtime(s) detected"
        else:
            summary = "No container runtimes detected"
        return Section.success("containers", "Container Runtimes", {"runtimes": runtimes},
                               summary=summary, notes=notes)
