from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Union

from .config import DigestThresholds
from .models import CriticalFinding, HealthDigest, Section, SectionStatus, Severity

log = logging.getLogger(__name__)

GIB = 1024.0 ** 3

# Absolute free-space floors, in GiB
FREE_SPACE_CRITICAL_GIB = 2.0
FREE_SPACE_WARNING_GIB = 5.0
BOOT_FREE_CRITICAL_GIB = 0.25
BOOT_FREE_WARNING_GIB = 0.5
BOOT_MOUNTS = {"/boot", "/boot/efi"}

INODE_CRITICAL_RATIO = 0.90
INODE_WARNING_RATIO = 0.80

DEGRADED_FALLBACK = "Collector reported a degraded state"
ERROR_FALLBACK = "Collector failed"


# ──────────────────────────────────────────────
# Typed views over the bodies the digest understands
# ──────────────────────────────────────────────
@dataclass(frozen=True)
class MountView:
    mount_point: str
    fs_type: str
    operational: bool
    read_only: bool
    usage_ratio: Optional[float]
    available_bytes: Optional[float]
    inodes_usage_ratio: Optional[float]


@dataclass(frozen=True)
class StorageBody:
    mounts: List[MountView]


@dataclass(frozen=True)
class MemoryView:
    total_bytes: Optional[float]
    available_bytes: Optional[float]


@dataclass(frozen=True)
class CgroupMemoryView:
    limit_bytes: Optional[float]
    usage_bytes: Optional[float]


@dataclass(frozen=True)
class ProcBody:
    host: Optional[MemoryView]
    cgroup: Optional[CgroupMemoryView]


BodyView = Union[StorageBody, ProcBody, None]


def _num(doc: Any, key: str) -> Optional[float]:
    if not isinstance(doc, dict):
        return None
    value = doc.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def _flag(doc: Dict[str, Any], key: str) -> Optional[bool]:
    value = doc.get(key)
    return value if isinstance(value, bool) else None


def _storage_view(body: Dict[str, Any]) -> StorageBody:
    mounts: List[MountView] = []
    raw = body.get("operating_mounts")
    for m in raw if isinstance(raw, list) else []:
        if not isinstance(m, dict) or not isinstance(m.get("mount_point"), str):
            continue
        mounts.append(MountView(
            mount_point=m["mount_point"],
            fs_type=m.get("fs_type") if isinstance(m.get("fs_type"), str) else "",
            operational=_flag(m, "operational") is True,
            read_only=_flag(m, "read_only") is True,
            usage_ratio=_num(m, "usage_ratio"),
            available_bytes=_num(m, "available_bytes"),
            inodes_usage_ratio=_num(m, "inodes_usage_ratio"),
        ))
    return StorageBody(mounts=mounts)


def _proc_view(body: Dict[str, Any]) -> ProcBody:
    memory = body.get("memory")
    if not isinstance(memory, dict):
        return ProcBody(host=None, cgroup=None)
    host = memory.get("host")
    cgroup = memory.get("cgroup")
    return ProcBody(
        host=MemoryView(_num(host, "total_bytes"), _num(host, "available_bytes"))
        if isinstance(host, dict) else None,
        cgroup=CgroupMemoryView(_num(cgroup, "limit_bytes"), _num(cgroup, "usage_bytes"))
        if isinstance(cgroup, dict) else None,
    )


def typed_body(section: Section) -> BodyView:
    """Typed view of a section body, keyed on section id; None for ids without digest rules."""
    if not isinstance(section.body, dict):
        return None
    if section.id == "storage":
        return _storage_view(section.body)
    if section.id == "proc":
        return _proc_view(section.body)
    return None


# ──────────────────────────────────────────────
# Engine
# ──────────────────────────────────────────────
def build_health_digest(sections: List[Section], thresholds: DigestThresholds) -> HealthDigest:
    findings: List[CriticalFinding] = []

    for section in sections:
        findings.extend(_status_findings(section))

        view = typed_body(section)
        if isinstance(view, StorageBody):
            findings.extend(_storage_findings(section, view, thresholds))
        elif isinstance(view, ProcBody):
            findings.extend(_memory_findings(section, view, thresholds))

    digest = HealthDigest(findings=findings)
    log.debug("Health digest: %s, %d findings", digest.overall.as_str(), len(findings))
    return digest


def _status_findings(section: Section) -> List[CriticalFinding]:
    if section.status is SectionStatus.DEGRADED:
        return [CriticalFinding.for_section(section, Severity.WARNING,
                                            section.summary or DEGRADED_FALLBACK)]
    if section.status is SectionStatus.ERROR:
        return [CriticalFinding.for_section(section, Severity.CRITICAL,
                                            section.summary or ERROR_FALLBACK)]
    return []


# ── storage ───────────────────────────────────
def evaluate_mount(mount: MountView, thresholds: DigestThresholds) -> Optional[Tuple[Severity, str]]:
    """
    (severity, message) for one mount, or None when nothing triggers.
    Severity is the maximum over every triggered signal; the message lists
    all of them.
    """
    if not mount.operational or mount.read_only:
        return None

    severity = Severity.INFO
    reasons: List[str] = []

    def escalate(level: Severity, reason: str) -> None:
        nonlocal severity
        severity = max(severity, level)
        reasons.append(reason)

    ratio = mount.usage_ratio
    if ratio is not None:
        if ratio >= thresholds.disk_critical:
            escalate(Severity.CRITICAL, f"usage {ratio * 100:.1f}%")
        elif ratio >= thresholds.disk_warning:
            escalate(Severity.WARNING, f"usage {ratio * 100:.1f}%")

    free_gib = mount.available_bytes / GIB if mount.available_bytes is not None else None
    if free_gib is not None:
        if free_gib <= FREE_SPACE_CRITICAL_GIB:
            escalate(Severity.CRITICAL, f"free space {free_gib:.2f} GiB")
        elif free_gib <= FREE_SPACE_WARNING_GIB:
            escalate(Severity.WARNING, f"free space {free_gib:.2f} GiB")

    inodes = mount.inodes_usage_ratio
    if inodes is not None:
        if inodes >= INODE_CRITICAL_RATIO:
            escalate(Severity.CRITICAL, f"inode usage {inodes * 100:.1f}%")
        elif inodes >= INODE_WARNING_RATIO:
            escalate(Severity.WARNING, f"inode usage {inodes * 100:.1f}%")

    if mount.mount_point in BOOT_MOUNTS and free_gib is not None:
        if free_gib <= BOOT_FREE_CRITICAL_GIB:
            escalate(Severity.CRITICAL, "boot volume nearly full")
        elif free_gib <= BOOT_FREE_WARNING_GIB:
            escalate(Severity.WARNING, "boot volume low free space")

    if severity is Severity.INFO:
        return None

    used = f"{ratio * 100:.1f}% used" if ratio is not None else "usage unknown"
    fs = f" ({mount.fs_type})" if mount.fs_type else ""
    message = f"Mount {mount.mount_point}{fs}: {used}; {', '.join(reasons)}"
    return severity, message


def _storage_findings(section: Section, view: StorageBody,
                      thresholds: DigestThresholds) -> List[CriticalFinding]:
    out: List[CriticalFinding] = []
    for mount in view.mounts:
        result = evaluate_mount(mount, thresholds)
        if result:
            out.append(CriticalFinding.for_section(section, *result))
    return out


# ── memory ────────────────────────────────────
def _memory_severity(remaining_ratio: float, thresholds: DigestThresholds) -> Optional[Severity]:
    if remaining_ratio <= thresholds.memory_critical:
        return Severity.CRITICAL
    if remaining_ratio <= thresholds.memory_warning:
        return Severity.WARNING
    return None


def _memory_findings(section: Section, view: ProcBody,
                     thresholds: DigestThresholds) -> List[CriticalFinding]:
    out: List[CriticalFinding] = []

    host = view.host
    if host and host.total_bytes and host.total_bytes > 0 and host.available_bytes is not None:
        ratio = host.available_bytes / host.total_bytes
        sev = _memory_severity(ratio, thresholds)
        if sev is not None:
            out.append(CriticalFinding.for_section(
                section, sev,
                f"Host memory {ratio * 100:.1f}% available "
                f"({host.available_bytes / GIB:.2f} GiB free)",
            ))

    cg = view.cgroup
    if cg and cg.limit_bytes and cg.limit_bytes > 0 and cg.usage_bytes is not None:
        remaining = max(cg.limit_bytes - cg.usage_bytes, 0.0)
        ratio = remaining / cg.limit_bytes
        sev = _memory_severity(ratio, thresholds)
        if sev is not None:
            out.append(CriticalFinding.for_section(
                section, sev,
                f"Cgroup memory {ratio * 100:.1f}% headroom "
                f"({remaining / GIB:.2f} GiB free of limit)",
            ))

    return out
