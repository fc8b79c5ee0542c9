"""
Designated-writer collaborator for multi-process save.

Leader election itself belongs to the distributed layer; the core only asks
whether this process performs writes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@runtime_checkable
class WriterDesignation(Protocol):
    def is_main_node(self) -> bool:
        ...


@dataclass(frozen=True)
class SingleProcess:
    """No distributed group: this process always writes."""

    def is_main_node(self) -> bool:
        return True


@dataclass(frozen=True)
class RankDesignation:
    rank: int
    main_rank: int = 0

    def is_main_node(self) -> bool:
        return self.rank == self.main_rank
