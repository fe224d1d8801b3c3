from __future__ import annotations
import dataclasses
import logging
import time
from typing import List

from .models import CollectionContext, Section
from .registry import Registry

log = logging.getLogger(__name__)


def collect_sections(registry: Registry, ctx: CollectionContext) -> List[Section]:
    """
    Run every registered collector once, in registration order.
    A failing collector becomes an error section; it never stops the run.
    """
    sections: List[Section] = []

    for entry in registry:
        start = time.perf_counter()
        try:
            collector = entry.factory()
            meta = collector.metadata()
        except MemoryError:
            raise
        except Exception as e:
            log.warning("Collector factory %s failed: %s", entry.id, e)
            section = Section.error(entry.id, entry.id, _describe(e))
            sections.append(dataclasses.replace(section, duration_ms=_elapsed_ms(start)))
            continue

        log.debug("Collecting %s", meta.id)
        try:
            section = collector.collect(ctx)
            if not isinstance(section, Section):
                raise TypeError(f"collector returned {type(section).__name__}, expected Section")
        except MemoryError:
            raise
        except Exception as e:
            log.warning("Collector %s failed: %s", meta.id, e)
            section = Section.error(meta.id, meta.title, _describe(e))

        elapsed = _elapsed_ms(start)
        log.debug("Collected %s in %d ms (%s)", meta.id, elapsed, section.status.value)
        sections.append(dataclasses.replace(section, duration_ms=elapsed))

    return sections


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _describe(e: Exception) -> str:
    return str(e) or type(e).__name__
