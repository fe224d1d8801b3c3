from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class CollectionContext:
    since: Optional[str] = None     # time filter, e.g. "2h" or an ISO timestamp


@dataclass(frozen=True)
class CollectorMetadata:
    id: str
    title: str
    description: str = ""


class SectionStatus(str, Enum):
    SUCCESS = "success"
    DEGRADED = "degraded"
    ERROR = "error"


class Severity(IntEnum):
    INFO = 0
    WARNING = 1
    CRITICAL = 2

    def as_str(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: str) -> "Severity":
        return cls[value.upper()]


@dataclass(frozen=True)
class Section:
    id: str
    title: str
    status: SectionStatus
    summary: Optional[str] = None
    body: Dict[str, Any] = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)
    duration_ms: Optional[int] = None

    def __post_init__(self):
        if self.status is not SectionStatus.SUCCESS and not self.summary:
            raise ValueError(f"section {self.id!r} is {self.status.value} but has no summary")

    @classmethod
    def success(cls, id: str, title: str, body: Dict[str, Any],
                summary: Optional[str] = None, notes: Optional[List[str]] = None) -> "Section":
        return cls(id=id, title=title, status=SectionStatus.SUCCESS,
                   summary=summary, body=body, notes=list(notes or []))

    @classmethod
    def degraded(cls, id: str, title: str, summary: str, body: Dict[str, Any],
                 notes: Optional[List[str]] = None) -> "Section":
        return cls(id=id, title=title, status=SectionStatus.DEGRADED,
                   summary=summary, body=body, notes=list(notes or []))

    @classmethod
    def error(cls, id: str, title: str, error: str) -> "Section":
        message = error or "collector failed"
        return cls(id=id, title=title, status=SectionStatus.ERROR,
                   summary=message, body={"error": message})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "status": self.status.value,
            "summary": self.summary,
            "body": self.body,
            "notes": list(self.notes),
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Section":
        return cls(
            id=data["id"],
            title=data["title"],
            status=SectionStatus(data["status"]),
            summary=data.get("summary"),
            body=data.get("body") or {},
            notes=list(data.get("notes") or []),
            duration_ms=data.get("duration_ms"),
        )


@dataclass(frozen=True)
class CriticalFinding:
    source_id: str
    source_title: str
    severity: Severity
    message: str

    @classmethod
    def for_section(cls, section: Section, severity: Severity, message: str) -> "CriticalFinding":
        return cls(section.id, section.title, severity, message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_id": self.source_id,
            "source_title": self.source_title,
            "severity": self.severity.as_str(),
            "message": self.message,
        }


@dataclass(frozen=True)
class HealthDigest:
    findings: List[CriticalFinding] = field(default_factory=list)

    @property
    def overall(self) -> Severity:
        return max((f.severity for f in self.findings), default=Severity.INFO)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "overall": self.overall.as_str(),
            "findings": [f.to_dict() for f in self.findings],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HealthDigest":
        return cls(findings=[
            CriticalFinding(
                source_id=f["source_id"],
                source_title=f["source_title"],
                severity=Severity.parse(f["severity"]),
                message=f["message"],
            )
            for f in data.get("findings") or []
        ])
