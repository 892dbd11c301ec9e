"""Report value objects handed from the extractors to the formatter."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from .decoder import RawRecord


@dataclass(frozen=True)
class Column:
    """One fixed-width column of a table.

    ``kind`` selects value rendering: "text", "int" or "time". ``render``
    overrides it for columns built from several fields.
    """
    header: str
    key: str
    width: int
    align: str = "<"
    kind: str = "text"
    render: Optional[Callable[[RawRecord], str]] = field(default=None, compare=False)


@dataclass(frozen=True)
class ReportSection:
    """A sorted table of records plus how to draw it. Never mutated once built."""
    kind: str
    title: str
    columns: Tuple[Column, ...]
    rows: Tuple[RawRecord, ...] = ()
    errors: Tuple[str, ...] = ()

    @property
    def count(self) -> int:
        return len(self.rows)


@dataclass(frozen=True)
class StageResult:
    """Outcome of one orchestrator stage.

    ``section`` names the output section the lines belong to; a skipped
    stage (feature absent) emits nothing at all.
    """
    name: str
    section: Optional[str]
    lines: Tuple[str, ...] = ()
    ok: bool = True
    skipped: bool = False
    errors: Tuple[str, ...] = ()


@dataclass
class ReportRun:
    """Everything one orchestrator run produced."""
    stages: List[StageResult] = field(default_factory=list)
    suspended: bool = False
    resumed: bool = False
    errors: List[str] = field(default_factory=list)

    @property
    def sections(self) -> List[StageResult]:
        """Stage results that produce output, in run order."""
        return [s for s in self.stages if not s.skipped and s.section]
