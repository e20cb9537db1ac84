"""Column identity: id allocation and scope lookup.

Every column produced anywhere in a plan owns a :class:`ColumnId`. Ids are
integer tokens handed out by a :class:`ColumnIdAllocator`; a reference keeps
the id of the column it points at, a computed expression always gets a new
one. Lineage is keyed by id, so renaming never changes what a column is.
"""

from __future__ import annotations

import itertools
from collections import ChainMap
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from ..errors import UnresolvedPlanError
from .plan import Attribute, AttributeRef, ColumnId, PlanNode, SourceColumnRef

ColumnLineage = Mapping[ColumnId, FrozenSet[SourceColumnRef]]

EMPTY: FrozenSet[SourceColumnRef] = frozenset()


class ColumnIdAllocator:
    """Hands out process-unique column ids."""

    def __init__(self, start: int = 1) -> None:
        self._counter = itertools.count(start)

    def new_id(self) -> ColumnId:
        return ColumnId(next(self._counter))

    def attribute(self, name: str) -> Attribute:
        return Attribute(self.new_id(), name)

    def attributes(self, names: Iterable[str]) -> Tuple[Attribute, ...]:
        return tuple(self.attribute(n) for n in names)


default_allocator = ColumnIdAllocator()


def identity_of(node: PlanNode, position: int) -> ColumnId:
    return node.output[position].id


def positional_remap(
    leaf: Tuple[Attribute, ...],
    defining: Tuple[Attribute, ...],
    columns: ColumnLineage,
) -> Dict[ColumnId, FrozenSet[SourceColumnRef]]:
    """Map each leaf id to the lineage of the defining plan's column at the same position."""
    out: Dict[ColumnId, FrozenSet[SourceColumnRef]] = {}
    for idx, attr in enumerate(leaf):
        if idx < len(defining):
            out[attr.id] = columns.get(defining[idx].id, EMPTY)
        else:
            out[attr.id] = EMPTY
    return out


class LineageScope:
    """Column lineage visible to an expression.

    Lookups try the current operator's input first, then enclosing query
    scopes, which is how correlated subqueries see outer columns.
    """

    def __init__(self, columns: ColumnLineage, outer: Optional["LineageScope"] = None) -> None:
        self.outer = outer
        if outer is None:
            self._columns: Mapping[ColumnId, FrozenSet[SourceColumnRef]] = ChainMap(dict(columns))
        else:
            self._columns = outer._columns.new_child(dict(columns))

    def nested(self, columns: ColumnLineage) -> "LineageScope":
        return LineageScope(columns, outer=self)

    def __contains__(self, column_id: ColumnId) -> bool:
        return column_id in self._columns

    def lookup(self, ref: AttributeRef) -> FrozenSet[SourceColumnRef]:
        try:
            return self._columns[ref.id]
        except KeyError:
            raise UnresolvedPlanError(
                f"Reference to column '{ref.name}' ({ref.id}) is not produced by any input",
                details={"column": ref.name, "id": ref.id.value},
            ) from None
