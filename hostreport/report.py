from __future__ import annotations
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .config import DigestThresholds
from .digest import build_health_digest
from .models import CollectionContext, HealthDigest, Section
from .orchestrator import collect_sections
from .registry import Registry


@dataclass(frozen=True)
class ReportMetadata:
    generated_at: str       # unix seconds, as a string
    sections: int

    def generated_at_utc(self) -> Optional[datetime]:
        try:
            return datetime.fromtimestamp(int(self.generated_at), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError):
            return None

    def generated_at_iso8601(self) -> str:
        dt = self.generated_at_utc()
        return dt.isoformat() if dt else "unknown"


@dataclass(frozen=True)
class Report:
    metadata: ReportMetadata
    sections: List[Section] = field(default_factory=list)
    health_digest: HealthDigest = field(default_factory=HealthDigest)

    @classmethod
    def build(cls, sections: List[Section],
              thresholds: Optional[DigestThresholds] = None,
              generated_at: Optional[int] = None) -> "Report":
        thresholds = (thresholds or DigestThresholds()).validate()
        ts = int(time.time()) if generated_at is None else int(generated_at)
        return cls(
            metadata=ReportMetadata(generated_at=str(ts), sections=len(sections)),
            sections=list(sections),
            health_digest=build_health_digest(sections, thresholds),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metadata": {
                "generated_at": self.metadata.generated_at,
                "generated_at_iso": self.metadata.generated_at_iso8601(),
                "sections": self.metadata.sections,
            },
            "sections": [s.to_dict() for s in self.sections],
            "health_digest": self.health_digest.to_dict(),
        }

    def to_json(self, indent: Optional[int] = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=False)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Report":
        meta = data.get("metadata") or {}
        sections = [Section.from_dict(s) for s in data.get("sections") or []]
        return cls(
            metadata=ReportMetadata(
                generated_at=str(meta.get("generated_at", "0")),
                sections=int(meta.get("sections", len(sections))),
            ),
            sections=sections,
            health_digest=HealthDigest.from_dict(data.get("health_digest") or {}),
        )

    @classmethod
    def from_json(cls, text: str) -> "Report":
        return cls.from_dict(json.loads(text))


def collect_report(registry: Registry, ctx: Optional[CollectionContext] = None,
                   thresholds: Optional[DigestThresholds] = None) -> Report:
    thresholds = (thresholds or DigestThresholds()).validate()
    return Report.build(collect_sections(registry, ctx or CollectionContext()), thresholds)
