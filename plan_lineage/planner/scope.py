from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from ..errors import UnresolvedPlanError
from ..core.plan import Attribute, AttributeRef, QualifiedName
from ..utils import normalize_identifier


@dataclass
class Source:
    """A FROM item as seen by column resolution: its alias and the columns it exposes."""

    alias: Optional[str]
    attributes: Tuple[Attribute, ...]
    table: Optional[QualifiedName] = None

    def find(self, name: str) -> List[Attribute]:
        return [a for a in self.attributes if a.name == name]

    def matches(self, qualifier: Sequence[str]) -> bool:
        if not qualifier:
            return True
        *prefix, short = qualifier
        if self.alias != short:
            return False
        if prefix and self.table is not None:
            return list(prefix) == list(self.table.parts[-1 - len(prefix):-1])
        return not prefix


@dataclass
class Scope:
    """Name resolution for one SELECT.

    Qualified names resolve by source alias, unqualified names by unique match
    across sources; misses fall through to the enclosing query scope, which
    marks this scope as correlated. ``extra`` holds names bound by the query
    itself (select-list aliases, ``grouping__id``).
    """

    sources: List[Source] = field(default_factory=list)
    outer: Optional["Scope"] = None
    extra: Dict[str, AttributeRef] = field(default_factory=dict)
    correlated: bool = False

    def nested(self, sources: Optional[List[Source]] = None) -> "Scope":
        return Scope(list(sources or []), outer=self)

    def attributes(self, qualifier: Optional[Sequence[str]] = None) -> List[Attribute]:
        """Columns exposed for ``*`` / ``alias.*`` in source order."""
        if not qualifier:
            return [a for s in self.sources for a in s.attributes]
        matched = [s for s in self.sources if s.matches(qualifier)]
        if not matched:
            raise UnresolvedPlanError(
                f"Unknown source '{'.'.join(qualifier)}' in star expansion",
                details={"qualifier": list(qualifier)},
            )
        return [a for s in matched for a in s.attributes]

    # --------------- resolution ---------------
    def resolve(self, name: str, qualifier: Optional[Sequence[str]] = None) -> AttributeRef:
        name = normalize_identifier(name)
        qualifier = [normalize_identifier(q) for q in (qualifier or []) if q]
        ref = self._resolve_local(name, qualifier)
        if ref is not None:
            return ref
        crossed = [self]
        scope = self.outer
        while scope is not None:
            ref = scope._resolve_local(name, qualifier)
            if ref is not None:
                for inner in crossed:
                    inner.correlated = True
                return ref
            crossed.append(scope)
            scope = scope.outer
        shown = ".".join([*qualifier, name])
        raise UnresolvedPlanError(f"Column '{shown}' cannot be resolved", details={"column": shown})

    def _resolve_local(self, name: str, qualifier: List[str]) -> Optional[AttributeRef]:
        if qualifier:
            sources = [s for s in self.sources if s.matches(qualifier)]
            if not sources:
                return None
            candidates = [a for s in sources for a in s.find(name)]
            if not candidates:
                raise UnresolvedPlanError(
                    f"Column '{name}' does not exist in '{'.'.join(qualifier)}'",
                    details={"column": name, "qualifier": qualifier},
                )
        else:
            candidates = [a for s in self.sources for a in s.find(name)]
            if not candidates and name in self.extra:
                return self.extra[name]
        if not candidates:
            return None
        if len({a.id for a in candidates}) > 1:
            raise UnresolvedPlanError(
                f"Column reference '{name}' is ambiguous",
                details={"column": name, "candidates": [str(a.id) for a in candidates]},
            )
        return candidates[0].ref()
