from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Union

from sqlglot import expressions as exp

from ..core.attributes import ColumnIdAllocator, default_allocator
from ..core.catalog import CacheRegistry, InMemoryCatalog
from ..core.plan import (
    Aggregate,
    Attribute,
    AttributeRef,
    Distinct,
    Expand,
    Expression,
    Filter,
    FunctionCall,
    Join,
    Limit,
    Literal,
    LocalRelation,
    PlanNode,
    Project,
    Projection,
    QualifiedName,
    Relation,
    SetOperation,
    Sort,
    SubqueryAlias,
    Window,
)
from ..errors import PlanningError, UnresolvedPlanError
from ..utils import alias_to_str, dedupe, normalize_identifier, table_parts_of
from .expressions import ExpressionPlanner, contains_aggregate, contains_window, expr_sql, unwrap_query
from .scope import Scope, Source


@dataclass
class CteDefinition:
    name: str
    query: exp.Expression
    env: "CteEnv"
    columns: Tuple[str, ...] = ()


CteEnv = Dict[str, CteDefinition]

SelectItem = Union[Attribute, exp.Expression]


@dataclass
class _SelectList:
    names: List[str] = field(default_factory=list)
    items: List[SelectItem] = field(default_factory=list)


def _alias_columns(node: exp.Expression) -> Tuple[str, ...]:
    alias = node.args.get("alias")
    if isinstance(alias, exp.TableAlias):
        return tuple(normalize_identifier(c.name) for c in alias.columns)
    return ()


def _set_operation_name(node: exp.Expression) -> str:
    if isinstance(node, exp.Intersect):
        return "intersect"
    if isinstance(node, exp.Except):
        return "except"
    return "union"


class SelectPlanner:
    """Plans queries (``SELECT``, set operations, ``VALUES``) against an in-memory catalog.

    Every table reference gets fresh column ids; CTEs are planned again at
    each reference, so two references to one CTE never share ids.
    """

    def __init__(
        self,
        catalog: Optional[InMemoryCatalog] = None,
        cache: Optional[CacheRegistry] = None,
        dialect: str = "spark",
        allocator: Optional[ColumnIdAllocator] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.catalog = catalog if catalog is not None else InMemoryCatalog(cache=cache)
        self.cache = cache if cache is not None else self.catalog.cache
        self.dialect = dialect
        self.allocator = allocator or default_allocator
        self.logger = logger or logging.getLogger("plan_lineage.planner")

    # --------------- public API ---------------
    def plan_query(
        self,
        node: exp.Expression,
        outer: Optional[Scope] = None,
        ctes: Optional[CteEnv] = None,
    ) -> PlanNode:
        query = unwrap_query(node)
        if query is None:
            raise PlanningError(f"Not a query: {expr_sql(node, self.dialect)}")
        ctes = self._with_ctes(query, ctes)
        if isinstance(query, exp.Select):
            return self._plan_select(query, outer, ctes)
        if isinstance(query, (exp.Union, exp.Intersect, exp.Except)):
            return self._plan_set_operation(query, outer, ctes)
        if isinstance(query, exp.Values):
            return self._plan_values(query, outer, ctes)
        raise PlanningError(f"Unsupported query: {type(query).__name__}")

    def _with_ctes(self, node: exp.Expression, ctes: Optional[CteEnv]) -> CteEnv:
        env: CteEnv = dict(ctes or {})
        with_ = node.args.get("with")
        if not with_:
            return env
        if with_.args.get("recursive"):
            raise PlanningError("Recursive CTEs are not supported")
        for cte in with_.expressions:
            name = normalize_identifier(cte.alias)
            env[name] = CteDefinition(name, cte.this, dict(env), _alias_columns(cte))
            self.logger.debug("Registered CTE %s", name)
        return env

    # --------------- FROM items ---------------
    def _rename(self, plan: PlanNode, names: Sequence[str], what: str) -> PlanNode:
        if not names:
            return plan
        if len(names) != len(plan.output):
            raise UnresolvedPlanError(
                f"{what} declares {len(names)} column names but produces {len(plan.output)} columns",
                details={"names": list(names)},
            )
        return Project(plan, tuple(Projection(a.ref(), a.renamed(n)) for a, n in zip(plan.output, names)))

    def resolve_table(self, node: exp.Table) -> Tuple[QualifiedName, Tuple[str, ...]]:
        """Canonical name and visible columns of a catalog table, view or cached relation."""
        qname = self.catalog.canonical_name(table_parts_of(node))
        cached = self.cache.lookup(qname)
        if cached is not None:
            return qname, tuple(a.name for a in cached.output)
        view = self.catalog.view(qname)
        if view is not None:
            return qname, view.columns
        table = self.catalog.table(qname)
        if table is not None:
            return qname, table.columns
        raise UnresolvedPlanError(f"Table or view not found: {qname}", details={"table": str(qname)})

    def plan_relation(self, node: exp.Table) -> Relation:
        qname, columns = self.resolve_table(node)
        return Relation(qname, self.allocator.attributes(columns))

    def _plan_from_item(
        self, term: exp.Expression, outer: Optional[Scope], ctes: CteEnv
    ) -> Tuple[PlanNode, Source]:
        alias = normalize_identifier(alias_to_str(term.args.get("alias")))
        if isinstance(term, exp.Table):
            if not isinstance(term.this, exp.Identifier):
                raise PlanningError(f"Table-valued function is not supported: {expr_sql(term, self.dialect)}")
            name = normalize_identifier(term.name)
            if not term.args.get("db") and name in ctes:
                cte = ctes[name]
                inner = self.plan_query(cte.query, ctes=cte.env)
                plan: PlanNode = SubqueryAlias(self._rename(inner, cte.columns, f"CTE {name}"), name)
                plan = self._rename(plan, _alias_columns(term), f"alias of {name}")
                return plan, Source(alias or name, plan.output)
            relation = self.plan_relation(term)
            plan = self._rename(relation, _alias_columns(term), f"alias of {relation.table}")
            return plan, Source(alias or relation.table.table, plan.output, table=None if alias else relation.table)
        if isinstance(term, exp.Subquery):
            inner = self.plan_query(term.this, outer=outer, ctes=ctes)
            plan = SubqueryAlias(self._rename(inner, _alias_columns(term), "subquery alias"), alias or "")
            return plan, Source(alias, plan.output)
        if isinstance(term, exp.Values):
            plan = self._plan_values(term, outer, ctes)
            return plan, Source(alias, plan.output)
        if isinstance(term, exp.Paren):
            return self._plan_from_item(term.this, outer, ctes)
        raise PlanningError(f"Unsupported FROM item: {expr_sql(term, self.dialect)}")

    @staticmethod
    def _join_type(join: exp.Join) -> str:
        kind = join.text("kind").lower()
        side = join.text("side").lower()
        if kind in ("semi", "anti"):
            return kind
        if side:
            return f"{side}_outer"
        if kind == "cross" or not (join.args.get("on") or join.args.get("using")):
            return "cross"
        return "inner"

    def _plan_from(
        self, select: exp.Select, outer: Optional[Scope], ctes: CteEnv
    ) -> Tuple[PlanNode, Scope]:
        from_ = select.args.get("from")
        if from_ is None:
            return LocalRelation(rows=((),)), Scope(outer=outer)
        if select.args.get("laterals"):
            raise PlanningError("LATERAL VIEW is not supported")
        plan, source = self._plan_from_item(from_.this, outer, ctes)
        scope = Scope([source], outer=outer)
        for join in select.args.get("joins") or []:
            right, right_source = self._plan_from_item(join.this, outer, ctes)
            join_type = self._join_type(join)
            scope.sources.append(right_source)
            condition: Optional[Expression] = None
            on = join.args.get("on")
            using = join.args.get("using") or []
            converter = ExpressionPlanner(self, scope, ctes)
            if on is not None:
                condition = converter.convert(on)
            elif using:
                condition = self._using_condition(scope, using, right_source)
            if join_type in ("semi", "anti"):
                scope.sources.remove(right_source)
            plan = Join(plan, right, join_type, condition)
        return plan, scope

    def _using_condition(self, scope: Scope, using: List[exp.Expression], right: Source) -> Expression:
        names = [normalize_identifier(u.name) for u in using]
        left_scope = Scope([s for s in scope.sources if s is not right], outer=scope.outer)
        pairs = []
        for name in names:
            pairs.append(left_scope.resolve(name))
            matches = right.find(name)
            if not matches:
                raise UnresolvedPlanError(f"USING column '{name}' not found on the right side")
            pairs.append(matches[0].ref())
        # the right side's copies are reachable by qualified name only
        right.attributes = tuple(a for a in right.attributes if a.name not in names)
        return FunctionCall("using", tuple(pairs))

    # --------------- select list ---------------
    def _select_list(self, select: exp.Select, scope: Scope) -> _SelectList:
        out = _SelectList()
        for proj in select.expressions:
            if isinstance(proj, exp.Star):
                attrs = scope.attributes()
            elif isinstance(proj, exp.Column) and isinstance(proj.this, exp.Star):
                attrs = scope.attributes([p for p in (proj.catalog, proj.db, proj.table) if p])
            else:
                out.names.append(self._output_name(proj))
                out.items.append(proj)
                continue
            for attr in attrs:
                out.names.append(attr.name)
                out.items.append(attr)
        return out

    def _output_name(self, proj: exp.Expression) -> str:
        if isinstance(proj, exp.Alias):
            return normalize_identifier(proj.alias)
        if isinstance(proj, exp.Column):
            return normalize_identifier(proj.name)
        if isinstance(proj, exp.Literal):
            return proj.name
        return expr_sql(proj, self.dialect).lower()

    def _project(
        self, names: Sequence[str], items: Sequence[SelectItem], converter: ExpressionPlanner
    ) -> Tuple[Projection, ...]:
        projections = []
        for name, item in zip(names, items):
            if isinstance(item, Attribute):
                expr: Expression = item.ref()
                expr = converter.substitutions.get(expr, expr)
            else:
                expr = converter.convert(item)
            if isinstance(expr, AttributeRef):
                attribute = Attribute(expr.id, name)
            else:
                attribute = self.allocator.attribute(name)
            projections.append(Projection(expr, attribute))
        return tuple(projections)

    # --------------- SELECT ---------------
    def _plan_select(self, select: exp.Select, outer: Optional[Scope], ctes: CteEnv) -> PlanNode:
        plan, scope = self._plan_from(select, outer, ctes)
        where = select.args.get("where")
        if where is not None:
            plan = Filter(plan, ExpressionPlanner(self, scope, ctes).convert(where.this))

        selected = self._select_list(select, scope)
        group = select.args.get("group")
        having = select.args.get("having")
        expressions = [i for i in selected.items if isinstance(i, exp.Expression)]
        aggregated = bool(group or having or any(contains_aggregate(e) for e in expressions))
        windowed = any(contains_window(e) for e in expressions)
        if aggregated and windowed:
            raise PlanningError("Window functions combined with aggregation in one SELECT are not supported")

        if aggregated:
            plan = self._plan_aggregate(select, plan, scope, selected, ctes)
        else:
            windows: Optional[List[Projection]] = [] if windowed else None
            converter = ExpressionPlanner(self, scope, ctes, windows=windows)
            projections = self._project(selected.names, selected.items, converter)
            if windows:
                plan = Window(plan, tuple(windows))
            plan = Project(plan, projections)

        if select.args.get("distinct"):
            plan = Distinct(plan)
        return self._order_and_limit(select, plan, scope)

    def _order_and_limit(self, node: exp.Expression, plan: PlanNode, scope: Optional[Scope]) -> PlanNode:
        order = node.args.get("order")
        if order is not None:
            order_scope = Scope(list(scope.sources) if scope else [], outer=scope.outer if scope else None)
            order_scope.extra = {**(scope.extra if scope else {}), **{a.name: a.ref() for a in plan.output}}
            converter = ExpressionPlanner(self, order_scope)
            keys = []
            for ordered in order.expressions:
                position = self._ordinal(ordered.this)
                if position is not None:
                    keys.append(self._positional(plan.output, position, "ORDER BY").ref())
                else:
                    keys.append(converter.convert(ordered.this))
            plan = Sort(plan, tuple(keys))
        limit = node.args.get("limit")
        if limit is not None:
            value = limit.args.get("expression") or limit.this
            plan = Limit(plan, Literal(expr_sql(value, self.dialect)) if value is not None else None)
        return plan

    @staticmethod
    def _ordinal(node: exp.Expression) -> Optional[int]:
        if isinstance(node, exp.Literal) and not node.is_string and node.name.isdigit():
            return int(node.name)
        return None

    @staticmethod
    def _positional(items: Sequence, position: int, clause: str):
        if not 1 <= position <= len(items):
            raise UnresolvedPlanError(
                f"{clause} position {position} is not in select list (valid range is [1, {len(items)}])",
                details={"position": position},
            )
        return items[position - 1]

    # --------------- aggregation ---------------
    def _group_keys(self, select: exp.Select, selected: _SelectList, scope: Scope) -> List[exp.Expression]:
        """Grouping keys in order: plain keys, then grouping-set / rollup / cube members."""
        group = select.args.get("group")
        if group is None:
            return []
        raw: List[exp.Expression] = list(group.expressions)
        for sets in self._grouping_set_lists(group)[0]:
            raw.extend(itertools.chain.from_iterable(sets))
        keys: List[exp.Expression] = []
        seen = set()
        for key in raw:
            key = self._group_key(key, selected, scope)
            text = expr_sql(key, self.dialect)
            if text not in seen:
                seen.add(text)
                keys.append(key)
        return keys

    def _group_key(self, key: exp.Expression, selected: _SelectList, scope: Scope) -> exp.Expression:
        position = self._ordinal(key)
        if position is not None:
            item = self._positional(selected.items, position, "GROUP BY")
            if isinstance(item, Attribute):
                return exp.column(item.name)
            return item.this if isinstance(item, exp.Alias) else item
        if isinstance(key, exp.Column) and not key.table:
            name = normalize_identifier(key.name)
            try:
                scope.resolve(name)
            except UnresolvedPlanError:
                # falls back to a select-list alias
                for alias, item in zip(selected.names, selected.items):
                    if alias == name and isinstance(item, exp.Alias):
                        return item.this
                raise
        return key

    @staticmethod
    def _members(node: exp.Expression) -> List[exp.Expression]:
        if isinstance(node, exp.Tuple):
            return list(node.expressions)
        if isinstance(node, exp.Paren):
            return [node.this]
        return [node]

    @staticmethod
    def _expanded(kind: str, columns: List[exp.Expression]) -> List[List[exp.Expression]]:
        if kind == "rollup":
            return [columns[:i] for i in range(len(columns), -1, -1)]
        return [
            [c for c, keep in zip(columns, mask) if keep]
            for mask in itertools.product((True, False), repeat=len(columns))
        ]

    def _grouping_set_lists(self, group: exp.Group) -> Tuple[List[List[List[exp.Expression]]], bool]:
        """Each GROUPING SETS / ROLLUP / CUBE clause as its list of sets.

        The flag is true when the plain ``GROUP BY`` list only names the keys
        (``GROUP BY a, b GROUPING SETS (...)``, ``GROUP BY a, b WITH ROLLUP``)
        instead of being added to every set.
        """
        clauses: List[List[List[exp.Expression]]] = []
        keys_only = False
        direct: List[List[exp.Expression]] = []
        for item in group.args.get("grouping_sets") or []:
            if isinstance(item, exp.GroupingSets):
                clauses.append([self._members(m) for m in item.expressions])
            else:
                direct.append(self._members(item))
        if direct:
            clauses.append(direct)
        if clauses:
            keys_only = True
        for kind in ("rollup", "cube"):
            value = group.args.get(kind)
            if not value:
                continue
            if not isinstance(value, list):
                # WITH ROLLUP / WITH CUBE over the plain key list
                clauses.append(self._expanded(kind, list(group.expressions)))
                keys_only = True
                continue
            loose: List[exp.Expression] = []
            for item in value:
                if isinstance(item, (exp.Rollup, exp.Cube)) and item.expressions:
                    clauses.append(self._expanded(kind, list(item.expressions)))
                elif isinstance(item, exp.Expression) and not isinstance(item, (exp.Rollup, exp.Cube)):
                    loose.append(item)
                else:
                    clauses.append(self._expanded(kind, list(group.expressions)))
                    keys_only = True
            if loose:
                clauses.append(self._expanded(kind, loose))
        return clauses, keys_only

    def _grouping_sets(
        self, select: exp.Select, keys: List[exp.Expression], selected: _SelectList, scope: Scope
    ) -> Optional[List[List[int]]]:
        """Grouping sets as key positions, or ``None`` for a plain ``GROUP BY``."""
        group = select.args.get("group")
        clauses, keys_only = self._grouping_set_lists(group) if group is not None else ([], False)
        if not clauses:
            return None
        index = {expr_sql(k, self.dialect): i for i, k in enumerate(keys)}
        plain = [index[expr_sql(self._group_key(k, selected, scope), self.dialect)] for k in group.expressions]
        combined: List[List[int]] = [[] if keys_only else plain]
        for sets in clauses:
            combined = [
                dedupe(base + [index[expr_sql(self._group_key(m, selected, scope), self.dialect)] for m in members])
                for base in combined
                for members in sets
            ]
        return combined

    def _plan_aggregate(
        self,
        select: exp.Select,
        child: PlanNode,
        scope: Scope,
        selected: _SelectList,
        ctes: CteEnv,
    ) -> PlanNode:
        keys = self._group_keys(select, selected, scope)
        key_exprs = [ExpressionPlanner(self, scope, ctes).convert(k) for k in keys]
        sets = self._grouping_sets(select, keys, selected, scope)
        substitutions: Dict[Expression, AttributeRef] = {}
        if sets is None:
            groupings: Tuple[Expression, ...] = tuple(key_exprs)
        else:
            key_attrs = self.allocator.attributes(self._output_name(k) for k in keys)
            gid = self.allocator.attribute("grouping__id")
            rows = []
            for members in sets:
                mask = sum(1 << (len(keys) - 1 - i) for i in range(len(keys)) if i not in members)
                row = [a.ref() for a in child.output]
                row.extend(key_exprs[i] if i in members else Literal(None) for i in range(len(keys)))
                row.append(Literal(mask))
                rows.append(tuple(row))
            child = Expand(child, tuple(rows), child.output + key_attrs + (gid,))
            substitutions = {expr: attr.ref() for expr, attr in zip(key_exprs, key_attrs)}
            scope.extra["grouping__id"] = gid.ref()
            groupings = tuple(a.ref() for a in key_attrs) + (gid.ref(),)
            self.logger.debug("Planned %d grouping sets over %d keys", len(sets), len(keys))

        converter = ExpressionPlanner(self, scope, ctes, substitutions=substitutions)
        projections = self._project(selected.names, selected.items, converter)
        plan: PlanNode = Aggregate(child, groupings, projections)

        having = select.args.get("having")
        if having is not None:
            having_scope = Scope(list(scope.sources), outer=scope.outer)
            having_scope.extra = {**scope.extra, **{p.attribute.name: p.attribute.ref() for p in projections}}
            condition = ExpressionPlanner(self, having_scope, ctes, substitutions=substitutions).convert(having.this)
            plan = Filter(plan, condition)
        return plan

    # --------------- set operations / VALUES ---------------
    def _plan_set_operation(self, node: exp.Expression, outer: Optional[Scope], ctes: CteEnv) -> PlanNode:
        left = self.plan_query(node.left, outer=outer, ctes=ctes)
        right = self.plan_query(node.right, outer=outer, ctes=ctes)
        operation = _set_operation_name(node)
        if len(left.output) != len(right.output):
            raise UnresolvedPlanError(
                f"{operation.upper()} inputs have {len(left.output)} and {len(right.output)} columns",
                details={"operation": operation},
            )
        output = self.allocator.attributes(a.name for a in left.output)
        plan: PlanNode = SetOperation((left, right), output, operation, bool(node.args.get("distinct")))
        return self._order_and_limit(node, plan, None)

    def _plan_values(self, node: exp.Values, outer: Optional[Scope], ctes: CteEnv) -> PlanNode:
        converter = ExpressionPlanner(self, Scope(outer=outer), ctes)
        rows = []
        for row in node.expressions:
            values = row.expressions if isinstance(row, exp.Tuple) else [row]
            rows.append(tuple(converter.convert(v) for v in values))
        width = max((len(r) for r in rows), default=0)
        if any(len(r) != width for r in rows):
            raise UnresolvedPlanError("VALUES rows have different numbers of columns")
        names = _alias_columns(node) or tuple(f"col{i + 1}" for i in range(width))
        if len(names) != width:
            raise UnresolvedPlanError(
                f"VALUES alias declares {len(names)} columns but rows have {width}",
                details={"names": list(names)},
            )
        return LocalRelation(self.allocator.attributes(names), tuple(rows))
