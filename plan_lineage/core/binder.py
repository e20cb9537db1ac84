from __future__ import annotations

from itertools import chain
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple

from ..errors import UnresolvedPlanError, UnsupportedOperatorError
from ..models import Lineage
from ..utils import dedupe
from .attributes import EMPTY, LineageScope
from .plan import (
    Command,
    CreateTable,
    CreateTableAsSelect,
    CreateView,
    InsertIntoDirectory,
    InsertIntoTable,
    MergeIntoTable,
    NoOpCommand,
    PlanNode,
    QualifiedName,
    SourceColumnRef,
)
from .propagator import LineagePropagator, NodeLineage


def _render(refs: Iterable[SourceColumnRef]) -> FrozenSet[str]:
    return frozenset(str(r) for r in refs)


class TargetBinder:
    """Turns a root plan into a :class:`Lineage` record.

    Queries produce one entry per output column named by the output name.
    Write commands zip the query output onto the destination columns and name
    each entry ``<target>.<column>``.
    """

    def __init__(self, propagator: LineagePropagator):
        self.propagator = propagator

    # --------------- public API ---------------
    def bind(self, root: PlanNode) -> Lineage:
        if not isinstance(root, Command):
            return self._bind_query(root)
        bind = getattr(self, f"_bind_{root.kind}", None)
        if bind is None:
            return self._bind_unknown(root)
        return bind(root)

    # --------------- helpers ---------------
    @staticmethod
    def _sources(result: NodeLineage) -> List[str]:
        return [str(t) for t in result.tables]

    def _zip_named(
        self,
        target: str,
        names: Sequence[str],
        query: PlanNode,
    ) -> Lineage:
        result = self.propagator.propagate(query)
        values = result.of(query.output)
        columns = [(f"{target}.{name}", _render(refs)) for name, refs in zip(names, values)]
        return Lineage(self._sources(result), [target], columns)

    # --------------- queries ---------------
    def _bind_query(self, root: PlanNode) -> Lineage:
        result = self.propagator.propagate(root)
        columns = [(attr.name, _render(refs)) for attr, refs in zip(root.output, result.of(root.output))]
        return Lineage(self._sources(result), [], columns)

    # --------------- commands ---------------
    def _bind_insert_into_table(self, node: InsertIntoTable) -> Lineage:
        result = self.propagator.propagate(node.child)
        values = result.of(node.child.output)
        static = set(node.static_partitions)
        declared = node.columns if node.columns else node.table_columns
        names = [c for c in declared if c not in static]
        if len(names) != len(values):
            raise UnresolvedPlanError(
                f"Cannot write {len(values)} columns into {node.target}: expected {len(names)}",
                details={"target": str(node.target), "expected": names},
            )
        assigned: Dict[str, FrozenSet[SourceColumnRef]] = dict(zip(names, values))
        target = str(node.target)
        columns = [(f"{target}.{c}", _render(assigned.get(c, EMPTY))) for c in node.table_columns]
        return Lineage(self._sources(result), [target], columns)

    def _bind_create_table_as_select(self, node: CreateTableAsSelect) -> Lineage:
        names = node.column_names or tuple(a.name for a in node.child.output)
        return self._zip_named(str(node.target), names, node.child)

    def _bind_create_view(self, node: CreateView) -> Lineage:
        names = node.column_names or tuple(a.name for a in node.child.output)
        return self._zip_named(str(node.target), names, node.child)

    def _bind_insert_into_directory(self, node: InsertIntoDirectory) -> Lineage:
        names = tuple(a.name for a in node.child.output)
        return self._zip_named(f"`{node.path}`", names, node.child)

    def _bind_merge_into_table(self, node: MergeIntoTable) -> Lineage:
        source = self.propagator.propagate(node.source)
        target_side = self.propagator.propagate(node.target_relation)
        scope = LineageScope({**target_side.columns, **source.columns})
        destination = [a.name for a in node.target_relation.output]
        assigned: Dict[str, Set[SourceColumnRef]] = {name: set() for name in destination}
        tables: List[QualifiedName] = []
        for action in node.actions:
            if action.kind == "delete":
                continue
            assignments: Iterable[Tuple[str, object]] = action.assignments
            if action.star:
                assignments = zip(destination, (a.ref() for a in node.source.output))
            for name, value in assignments:
                if name not in assigned:
                    raise UnresolvedPlanError(
                        f"MERGE assigns unknown column '{name}' of {node.target}",
                        details={"column": name, "target": str(node.target)},
                    )
                assigned[name] |= self.propagator.expression_lineage(value, scope, tables, source.tables)
        target = str(node.target)
        sources = [str(t) for t in dedupe(chain(source.tables, tables))]
        columns = [(f"{target}.{name}", _render(assigned[name])) for name in destination]
        return Lineage(sources, [target], columns)

    def _bind_create_table(self, node: CreateTable) -> Lineage:
        return Lineage()

    def _bind_noop_command(self, node: NoOpCommand) -> Lineage:
        return Lineage()

    def _bind_unknown(self, node: Command) -> Lineage:
        warning = UnsupportedOperatorError(node.kind)
        self.propagator.warnings.append(warning)
        self.propagator.logger.warning("%s; reporting query lineage without a target", warning.message)
        query: Optional[PlanNode] = node.query
        if query is None:
            return Lineage()
        return self._bind_query(query)
