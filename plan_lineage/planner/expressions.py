"""
sqlglot expression -> plan expression conversion.

Columns are resolved through a :class:`~plan_lineage.planner.scope.Scope`,
subqueries are handed back to the owning planner with the current scope as
their outer scope, and window calls are lifted into ``Projection`` entries
the caller turns into a ``Window`` operator.
"""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING, Dict, Iterator, List, Optional, Set

from sqlglot import expressions as exp

from ..core.plan import (
    AggregateCall,
    AttributeRef,
    CaseWhen,
    Expression,
    FunctionCall,
    Literal,
    PredicateSubquery,
    Projection,
    ScalarSubquery,
    UnresolvedAttribute,
    WindowExpression,
)
from ..errors import PlanningError
from ..utils import normalize_identifier

if TYPE_CHECKING:
    from .query import CteEnv, SelectPlanner
    from .scope import Scope

# Aggregates sqlglot parses as anonymous functions.
AGGREGATE_FUNCTIONS = frozenset(
    {
        "any",
        "bit_and",
        "bit_or",
        "bit_xor",
        "bool_and",
        "bool_or",
        "collect_list",
        "collect_set",
        "count_if",
        "every",
        "first_value",
        "histogram_numeric",
        "kurtosis",
        "last_value",
        "max_by",
        "min_by",
        "percentile",
        "percentile_approx",
        "skewness",
        "some",
    }
)

_OPAQUE = (exp.DataType, exp.Identifier, exp.Var)


def expr_sql(e: exp.Expression, dialect: str) -> str:
    try:
        return e.sql(dialect=dialect)
    except Exception:
        return str(e)


def unwrap_query(node: exp.Expression) -> Optional[exp.Expression]:
    """The query inside ``(subquery)`` / ``EXISTS (...)`` wrappers, if any."""
    while isinstance(node, (exp.Subquery, exp.Paren, exp.Exists)):
        node = node.this
    if isinstance(node, (exp.Query, exp.Values)):
        return node
    return None


def _local_nodes(node: exp.Expression) -> Iterator[exp.Expression]:
    """Walk an expression without entering subqueries or window specs."""
    stack = [node]
    while stack:
        current = stack.pop()
        yield current
        if isinstance(current, (exp.Subquery, exp.Query, exp.Window)):
            continue
        stack.extend(current.iter_expressions())


def is_aggregate_call(node: exp.Expression) -> bool:
    if isinstance(node, exp.AggFunc):
        return True
    return isinstance(node, exp.Anonymous) and normalize_identifier(node.name) in AGGREGATE_FUNCTIONS


def contains_aggregate(node: exp.Expression) -> bool:
    return any(is_aggregate_call(n) for n in _local_nodes(node))


def contains_window(node: exp.Expression) -> bool:
    return any(isinstance(n, exp.Window) for n in _local_nodes(node))


def substitute(expr: Expression, mapping: Dict[Expression, AttributeRef]) -> Expression:
    """Replace whole sub-expressions found in ``mapping``, outermost match first.

    Aggregate arguments are left alone: they read the aggregate's input rows.
    """
    if not mapping:
        return expr
    hit = mapping.get(expr)
    if hit is not None:
        return hit
    if isinstance(expr, (AttributeRef, Literal, UnresolvedAttribute, ScalarSubquery, AggregateCall)):
        return expr
    changes = {}
    for f in dataclasses.fields(expr):
        value = getattr(expr, f.name)
        new = _substitute_value(value, mapping)
        if new is not value:
            changes[f.name] = new
    return dataclasses.replace(expr, **changes) if changes else expr


def _substitute_value(value, mapping):
    if isinstance(value, Expression):
        return substitute(value, mapping)
    if isinstance(value, tuple):
        items = tuple(_substitute_value(v, mapping) for v in value)
        if any(a is not b for a, b in zip(items, value)):
            return items
    return value


class ExpressionPlanner:
    """Converts one select's sqlglot expressions in a fixed scope.

    ``windows`` is ``None`` where window functions are not allowed; otherwise
    each window call is appended there and replaced by a reference to its
    output column.
    """

    def __init__(
        self,
        planner: "SelectPlanner",
        scope: "Scope",
        ctes: Optional["CteEnv"] = None,
        substitutions: Optional[Dict[Expression, AttributeRef]] = None,
        windows: Optional[List[Projection]] = None,
    ):
        self.planner = planner
        self.scope = scope
        self.ctes = ctes
        self.substitutions = substitutions or {}
        self.windows = windows
        self._lambda_vars: Set[str] = set()

    # --------------- public API ---------------
    def convert(self, node: exp.Expression) -> Expression:
        return substitute(self._convert(node), self.substitutions)

    # --------------- conversion ---------------
    def _convert(self, node: exp.Expression) -> Expression:
        if isinstance(node, (exp.Alias, exp.Paren, exp.Ordered)):
            return self._convert(node.this)
        if isinstance(node, exp.Column):
            return self._column(node)
        if isinstance(node, exp.Null):
            return Literal(None)
        if isinstance(node, exp.Boolean):
            return Literal(bool(node.this))
        if isinstance(node, exp.Literal):
            return Literal(node.name)
        if isinstance(node, _OPAQUE):
            return Literal(node.name)
        if isinstance(node, exp.Subquery) or isinstance(node, exp.Query):
            return self._scalar_subquery(node)
        if isinstance(node, exp.Exists):
            return self._predicate_subquery(node, "exists")
        if isinstance(node, exp.In) and node.args.get("query") is not None:
            return self._predicate_subquery(node.args["query"], "in", operand=node.this)
        if isinstance(node, exp.Not) and isinstance(node.this, (exp.Exists, exp.In)):
            inner = self._convert(node.this)
            if isinstance(inner, PredicateSubquery):
                return dataclasses.replace(inner, negated=not inner.negated)
            return FunctionCall("not", (inner,))
        if isinstance(node, exp.Window):
            return self._window(node)
        if isinstance(node, exp.Case):
            return self._case(node)
        if isinstance(node, exp.Lambda):
            return self._lambda(node)
        if is_aggregate_call(node):
            return self._aggregate(node)
        if isinstance(node, exp.Star):
            raise PlanningError("'*' is only allowed in a select list or count(*)")
        name = normalize_identifier(node.name) if isinstance(node, exp.Anonymous) else node.key
        if name in ("grouping_id", "groupingid", "grouping__id"):
            return self.scope.resolve("grouping__id")
        return FunctionCall(name, tuple(self._convert(c) for c in self._operands(node)))

    @staticmethod
    def _operands(node: exp.Expression) -> Iterator[exp.Expression]:
        for value in node.args.values():
            if isinstance(value, exp.Expression):
                yield value
            elif isinstance(value, list):
                for item in value:
                    if isinstance(item, exp.Expression):
                        yield item

    def _column(self, node: exp.Column) -> Expression:
        if isinstance(node.this, exp.Star):
            raise PlanningError(f"'{expr_sql(node, self.planner.dialect)}' is only allowed in a select list")
        name = normalize_identifier(node.name)
        qualifier = [p for p in (node.catalog, node.db, node.table) if p]
        if not qualifier and name in self._lambda_vars:
            return Literal(name)
        return self.scope.resolve(name, qualifier)

    def _scalar_subquery(self, node: exp.Expression) -> Expression:
        query = unwrap_query(node)
        if query is None:
            return self._convert(node.this)
        return ScalarSubquery(self.planner.plan_query(query, outer=self.scope, ctes=self.ctes))

    def _predicate_subquery(
        self, node: exp.Expression, kind: str, operand: Optional[exp.Expression] = None
    ) -> Expression:
        query = unwrap_query(node)
        if query is None:
            raise PlanningError(f"Unsupported {kind.upper()} operand: {expr_sql(node, self.planner.dialect)}")
        inner = self.scope.nested()
        plan = self.planner.plan_query(query, outer=inner, ctes=self.ctes)
        return PredicateSubquery(
            plan,
            kind=kind,
            operand=self._convert(operand) if operand is not None else None,
            correlated_only=inner.correlated,
        )

    def _case(self, node: exp.Case) -> Expression:
        branches = tuple(
            (self._convert(branch.this), self._convert(branch.args["true"])) for branch in node.args.get("ifs") or []
        )
        default = node.args.get("default")
        operand = node.this
        return CaseWhen(
            branches,
            default=self._convert(default) if default is not None else None,
            operand=self._convert(operand) if operand is not None else None,
        )

    def _aggregate(self, node: exp.Expression) -> Expression:
        name = normalize_identifier(node.name) if isinstance(node, exp.Anonymous) else node.key
        this = node.args.get("this")
        if isinstance(node, exp.Count):
            if this is None or isinstance(this, exp.Star):
                return AggregateCall(name, is_count_star=True)
            if isinstance(this, exp.Literal) or (isinstance(this, exp.Boolean) and this.this):
                # count(1) counts rows, the same as count(*)
                return AggregateCall(name, is_count_star=True)
        if isinstance(this, exp.Distinct):
            args = tuple(self._convert(e) for e in this.expressions)
            rest = tuple(self._convert(c) for c in self._operands(node) if c is not this)
            return AggregateCall(name, args + rest, is_distinct=True)
        return AggregateCall(name, tuple(self._convert(c) for c in self._operands(node)))

    def _window(self, node: exp.Window) -> Expression:
        if self.windows is None:
            raise PlanningError(f"Window function not allowed here: {expr_sql(node, self.planner.dialect)}")
        order = node.args.get("order")
        window = WindowExpression(
            self._convert(node.this),
            partition_by=tuple(self._convert(p) for p in node.args.get("partition_by") or []),
            order_by=tuple(self._convert(o) for o in (order.expressions if order is not None else [])),
        )
        attribute = self.planner.allocator.attribute("window")
        self.windows.append(Projection(window, attribute))
        return attribute.ref()

    def _lambda(self, node: exp.Lambda) -> Expression:
        names = {normalize_identifier(e.name) for e in node.expressions}
        added = names - self._lambda_vars
        self._lambda_vars |= added
        try:
            return FunctionCall("lambda", (self._convert(node.this),))
        finally:
            self._lambda_vars -= added
