from __future__ import annotations
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional

from .models import CollectionContext, CollectorMetadata, Section


class CollectorError(Exception):
    """A data source could not produce its section at all."""


class Collector(ABC):
    """
    One data source. `collect` returns a Section or raises; the
    orchestrator turns any raised Exception into an error section.
    """

    @abstractmethod
    def metadata(self) -> CollectorMetadata:
        ...

    @abstractmethod
    def collect(self, ctx: CollectionContext) -> Section:
        ...


CollectorFactory = Callable[[], Collector]


@dataclass(frozen=True)
class CollectorEntry:
    id: str
    factory: CollectorFactory


class Registry:
    """
    Append-only list of collector factories.
    Populated once at startup; sealed the first time it is iterated.
    Each entry carries the section id used when the factory itself fails,
    so it should match the id the collector reports in its metadata.
    """
    def __init__(self):
        self._entries: List[CollectorEntry] = []
        self._sealed = False

    def register(self, factory: CollectorFactory, id: Optional[str] = None) -> CollectorFactory:
        if self._sealed:
            raise RuntimeError("registry is sealed; register collectors before the first run")
        if not callable(factory):
            raise TypeError(f"collector factory must be callable, got {factory!r}")
        self._entries.append(CollectorEntry(id or getattr(factory, "__name__", repr(factory)), factory))
        return factory

    def __iter__(self) -> Iterator[CollectorEntry]:
        self._sealed = True
        return iter(tuple(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def sealed(self) -> bool:
        return self._sealed
