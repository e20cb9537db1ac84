from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .errors import LineageError, UnsupportedOperatorError
from .utils import dedupe


@dataclass(frozen=True)
class Lineage:
    """Lineage of one statement.

    ``sources`` and ``targets`` are de-duplicated and keep first-seen order.
    ``columns`` is an ordered list of ``(display_name, source_columns)`` that
    keeps duplicate names. Any sequences/sets are accepted and normalized, so
    ``Lineage(["db.t"], [], [("a", {"db.t.a"})])`` compares equal to an
    extracted record.
    """

    sources: Tuple[str, ...] = ()
    targets: Tuple[str, ...] = ()
    columns: Tuple[Tuple[str, FrozenSet[str]], ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "sources", tuple(dedupe(str(s) for s in self.sources)))
        object.__setattr__(self, "targets", tuple(dedupe(str(t) for t in self.targets)))
        object.__setattr__(
            self,
            "columns",
            tuple((str(name), frozenset(str(s) for s in refs)) for name, refs in self.columns),
        )

    @property
    def is_empty(self) -> bool:
        return not (self.sources or self.targets or self.columns)

    def column_names(self) -> List[str]:
        return [name for name, _ in self.columns]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sources": list(self.sources),
            "targets": list(self.targets),
            "columns": [{"name": name, "sources": sorted(refs)} for name, refs in self.columns],
        }

    def as_csv_rows(self, file: Optional[str] = None, statement: int = 0) -> List[List[str]]:
        """One row per (target column, source column); constant columns get one row with empty sources."""
        target = ",".join(self.targets)
        rows: List[List[str]] = []
        for name, refs in self.columns:
            for ref in sorted(refs) or [""]:
                rows.append([file or "", str(statement), target, name, ref])
        return rows


CSV_HEADER = [
    "file",
    "statement",
    "target",
    "target_column",
    "source_column",
]


@dataclass(frozen=True)
class ExtractionResult:
    """Outcome of one extraction: a lineage record or the error that stopped it."""

    lineage: Optional[Lineage] = None
    error: Optional[LineageError] = None
    warnings: Tuple[UnsupportedOperatorError, ...] = field(default_factory=tuple)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> Lineage:
        if self.error is not None:
            raise self.error
        return self.lineage if self.lineage is not None else Lineage()

    @classmethod
    def failure(cls, error: LineageError, warnings: Iterable[UnsupportedOperatorError] = ()) -> "ExtractionResult":
        return cls(lineage=None, error=error, warnings=tuple(warnings))
