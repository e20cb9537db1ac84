from __future__ import annotations

import logging
from dataclasses import dataclass
from itertools import chain
from typing import Dict, FrozenSet, Hashable, Iterable, List, Optional, Sequence, Tuple

from ..errors import CyclicDefinitionError, UnresolvedPlanError, UnsupportedOperatorError
from ..utils import dedupe
from .attributes import EMPTY, LineageScope, identity_of, positional_remap
from .catalog import CatalogBridge, EmptyBridge
from .plan import (
    COUNT_COLUMN,
    Aggregate,
    AggregateCall,
    Attribute,
    AttributeRef,
    ColumnId,
    Expand,
    Expression,
    Filter,
    Join,
    Literal,
    LocalRelation,
    PlanNode,
    PredicateSubquery,
    Project,
    Projection,
    QualifiedName,
    Relation,
    ScalarSubquery,
    SetOperation,
    SourceColumnRef,
    UnresolvedAttribute,
    Window,
)


@dataclass(frozen=True)
class NodeLineage:
    """Lineage computed for one operator: column id -> base columns, plus touched tables."""

    columns: Dict[ColumnId, FrozenSet[SourceColumnRef]]
    tables: Tuple[QualifiedName, ...]

    def of(self, attributes: Sequence[Attribute]) -> List[FrozenSet[SourceColumnRef]]:
        return [self.columns.get(a.id, EMPTY) for a in attributes]


class LineagePropagator:
    """Bottom-up lineage propagation over a plan tree.

    Rules are looked up by node ``kind`` (``_visit_<kind>``); kinds without a
    rule go through :meth:`_fallback`, which never raises. One instance serves
    one extraction: it owns the expansion stack used to detect view/cache
    cycles and collects fallback warnings.
    """

    def __init__(self, bridge: Optional[CatalogBridge] = None, logger: Optional[logging.Logger] = None):
        self.bridge = bridge if bridge is not None else EmptyBridge()
        self.logger = logger or logging.getLogger("plan_lineage.propagator")
        self.warnings: List[UnsupportedOperatorError] = []
        self._expanding: List[Hashable] = []

    # --------------- public API ---------------
    def propagate(self, node: PlanNode, outer: Optional[LineageScope] = None) -> NodeLineage:
        visit = getattr(self, f"_visit_{node.kind}", None)
        if visit is None:
            return self._fallback(node, outer)
        return visit(node, outer)

    def expression_lineage(
        self,
        expr: Expression,
        scope: LineageScope,
        tables: List[QualifiedName],
        count_tables: Sequence[QualifiedName] = (),
    ) -> FrozenSet[SourceColumnRef]:
        """Base columns an expression reads.

        Tables of scalar subqueries met on the way are appended to ``tables``.
        ``count_tables`` are the tables a ``count(*)`` binds its sentinel to.
        """
        if isinstance(expr, AttributeRef):
            return scope.lookup(expr)
        if isinstance(expr, UnresolvedAttribute):
            raise UnresolvedPlanError(f"Unresolved column '{expr.name}'", details={"column": expr.name})
        if isinstance(expr, Literal):
            return EMPTY
        if isinstance(expr, AggregateCall) and expr.is_count_star:
            return frozenset(SourceColumnRef(t, COUNT_COLUMN) for t in count_tables)
        if isinstance(expr, ScalarSubquery):
            sub = self.propagate(expr.plan, outer=scope)
            tables.extend(sub.tables)
            output = expr.plan.output
            return sub.columns.get(output[0].id, EMPTY) if output else EMPTY
        if isinstance(expr, PredicateSubquery):
            # resolved for well-formedness; its tables and columns are dropped
            self.propagate(expr.plan, outer=scope)
            self.logger.debug(
                "Dropping lineage of %s subquery (correlated only: %s)", expr.kind, expr.correlated_only
            )
            if expr.operand is None:
                return EMPTY
            return self.expression_lineage(expr.operand, scope, tables, count_tables)
        refs: set = set()
        for child in expr.children():
            refs |= self.expression_lineage(child, scope, tables, count_tables)
        return frozenset(refs)

    # --------------- helpers ---------------
    @staticmethod
    def _scope(columns: Dict[ColumnId, FrozenSet[SourceColumnRef]], outer: Optional[LineageScope]) -> LineageScope:
        return outer.nested(columns) if outer is not None else LineageScope(columns)

    def _check(self, expr: Optional[Expression], scope: LineageScope, count_tables: Sequence[QualifiedName] = ()):
        if expr is not None:
            self.expression_lineage(expr, scope, [], count_tables)

    def _projected(
        self,
        projections: Iterable[Projection],
        child: NodeLineage,
        outer: Optional[LineageScope],
        base: Optional[Dict[ColumnId, FrozenSet[SourceColumnRef]]] = None,
    ) -> NodeLineage:
        scope = self._scope(child.columns, outer)
        tables: List[QualifiedName] = []
        columns: Dict[ColumnId, FrozenSet[SourceColumnRef]] = dict(base or {})
        for p in projections:
            columns[p.attribute.id] = self.expression_lineage(p.expression, scope, tables, child.tables)
        return NodeLineage(columns, tuple(dedupe(chain(tables, child.tables))))

    # --------------- rules ---------------
    def _visit_relation(self, node: Relation, outer: Optional[LineageScope]) -> NodeLineage:
        key = node.lookup_key
        if key is None:
            raise UnresolvedPlanError("Relation has neither a table name nor a cache key")
        plan = self.bridge.resolve_defining_plan(key)
        if plan is None:
            if node.table is None:
                raise UnresolvedPlanError(f"Cached relation {key} is not registered", details={"key": key})
            columns = {a.id: frozenset({SourceColumnRef(node.table, a.name)}) for a in node.output}
            return NodeLineage(columns, (node.table,))
        if key in self._expanding:
            raise CyclicDefinitionError(key, self._expanding)
        self.logger.debug("Inlining defining plan of %s", key)
        self._expanding.append(key)
        try:
            inner = self.propagate(plan)
        finally:
            self._expanding.pop()
        if len(plan.output) != len(node.output):
            self.logger.warning(
                "Relation %s exposes %d columns but its definition produces %d",
                key,
                len(node.output),
                len(plan.output),
            )
        return NodeLineage(positional_remap(node.output, plan.output, inner.columns), inner.tables)

    def _visit_local_relation(self, node: LocalRelation, outer: Optional[LineageScope]) -> NodeLineage:
        scope = self._scope({}, outer)
        tables: List[QualifiedName] = []
        columns: Dict[ColumnId, FrozenSet[SourceColumnRef]] = {}
        for idx, attr in enumerate(node.output):
            refs: set = set()
            for row in node.rows:
                if idx < len(row):
                    refs |= self.expression_lineage(row[idx], scope, tables)
            columns[attr.id] = frozenset(refs)
        return NodeLineage(columns, tuple(dedupe(tables)))

    def _visit_project(self, node: Project, outer: Optional[LineageScope]) -> NodeLineage:
        child = self.propagate(node.child, outer)
        return self._projected(node.projections, child, outer)

    def _visit_filter(self, node: Filter, outer: Optional[LineageScope]) -> NodeLineage:
        child = self.propagate(node.child, outer)
        self._check(node.condition, self._scope(child.columns, outer), child.tables)
        return child

    def _visit_aggregate(self, node: Aggregate, outer: Optional[LineageScope]) -> NodeLineage:
        child = self.propagate(node.child, outer)
        scope = self._scope(child.columns, outer)
        for grouping in node.groupings:
            self._check(grouping, scope)
        # input columns stay visible to a HAVING filter above
        return self._projected(node.projections, child, outer, base=child.columns)

    def _visit_expand(self, node: Expand, outer: Optional[LineageScope]) -> NodeLineage:
        child = self.propagate(node.child, outer)
        scope = self._scope(child.columns, outer)
        columns: Dict[ColumnId, FrozenSet[SourceColumnRef]] = {}
        for idx, attr in enumerate(node.output):
            values = [row[idx] for row in node.projections if idx < len(row)]
            if not values or any(isinstance(v, Literal) and v.is_null for v in values):
                # null-filled in at least one grouping set: not attributable
                columns[attr.id] = EMPTY
                continue
            refs: set = set()
            for value in values:
                refs |= self.expression_lineage(value, scope, [], child.tables)
            columns[attr.id] = frozenset(refs)
        return NodeLineage(columns, child.tables)

    def _visit_join(self, node: Join, outer: Optional[LineageScope]) -> NodeLineage:
        left = self.propagate(node.left, outer)
        right = self.propagate(node.right, outer)
        columns = {**left.columns, **right.columns}
        self._check(node.condition, self._scope(columns, outer))
        return NodeLineage(columns, tuple(dedupe(chain(left.tables, right.tables))))

    def _visit_set_operation(self, node: SetOperation, outer: Optional[LineageScope]) -> NodeLineage:
        results = []
        for child in node.inputs:
            if len(child.output) != len(node.output):
                raise UnresolvedPlanError(
                    f"{node.operation} input has {len(child.output)} columns, expected {len(node.output)}",
                    details={"operation": node.operation},
                )
            results.append(self.propagate(child, outer))
        columns: Dict[ColumnId, FrozenSet[SourceColumnRef]] = {}
        for idx, attr in enumerate(node.output):
            refs: set = set()
            for child, result in zip(node.inputs, results):
                refs |= result.columns.get(identity_of(child, idx), EMPTY)
            columns[attr.id] = frozenset(refs)
        return NodeLineage(columns, tuple(dedupe(chain.from_iterable(r.tables for r in results))))

    def _visit_window(self, node: Window, outer: Optional[LineageScope]) -> NodeLineage:
        child = self.propagate(node.child, outer)
        return self._projected(node.window_expressions, child, outer, base=child.columns)

    def _passthrough(self, node: PlanNode, outer: Optional[LineageScope]) -> NodeLineage:
        return self.propagate(node.children[0], outer)

    _visit_subquery_alias = _passthrough
    _visit_sort = _passthrough
    _visit_limit = _passthrough
    _visit_distinct = _passthrough

    def _fallback(self, node: PlanNode, outer: Optional[LineageScope]) -> NodeLineage:
        warning = UnsupportedOperatorError(node.kind)
        self.warnings.append(warning)
        self.logger.warning("%s; falling back to positional passthrough", warning.message)
        results = [self.propagate(child, outer) for child in node.children]
        tables = tuple(dedupe(chain.from_iterable(r.tables for r in results)))
        output = tuple(getattr(node, "output", ()))
        if results and len(node.children[0].output) == len(output):
            first = results[0]
            columns = {
                attr.id: first.columns.get(src.id, EMPTY)
                for attr, src in zip(output, node.children[0].output)
            }
        else:
            columns = {attr.id: EMPTY for attr in output}
        return NodeLineage(columns, tables)
