from __future__ import annotations

from typing import List, Optional, Tuple, Union

import sqlglot
from sqlglot import expressions as exp

from ..core.plan import (
    Attribute,
    CreateTable,
    CreateTableAsSelect,
    CreateView,
    InsertIntoDirectory,
    InsertIntoTable,
    Literal,
    MergeAction,
    MergeIntoTable,
    NoOpCommand,
    PlanNode,
    QualifiedName,
)
from ..errors import PlanningError, UnresolvedPlanError
from ..utils import alias_to_str, normalize_identifier, table_parts_of
from .expressions import ExpressionPlanner, expr_sql, unwrap_query
from .query import CteEnv, SelectPlanner
from .scope import Scope, Source


def _target_table(node: exp.Expression) -> Optional[exp.Table]:
    if isinstance(node, exp.Schema):
        node = node.this
    return node if isinstance(node, exp.Table) else None


def _schema_names(node: exp.Expression) -> Optional[Tuple[str, ...]]:
    """Column names listed in ``t (a, b)``; ``None`` when there is no list."""
    if isinstance(node, exp.Schema) and node.expressions:
        return tuple(normalize_identifier(e.name) for e in node.expressions)
    return None


class QueryPlanner(SelectPlanner):
    """Turns SQL statements into plan trees.

    Queries plan to their relational operators, write statements to the
    matching command node and anything without a data flow to
    :class:`NoOpCommand`. Planning never mutates the catalog; applying DDL
    and cache side effects is up to the caller.
    """

    # --------------- public API ---------------
    def parse(self, sql: str) -> List[exp.Expression]:
        return [s for s in sqlglot.parse(sql, read=self.dialect) if s is not None]

    def plan(self, statement: Union[str, exp.Expression]) -> PlanNode:
        if isinstance(statement, str):
            statements = self.parse(statement)
            if len(statements) != 1:
                raise PlanningError(f"Expected one statement, got {len(statements)}")
            statement = statements[0]
        if unwrap_query(statement) is not None:
            return self.plan_query(statement)
        handler = getattr(self, f"_plan_{statement.key}", None)
        if handler is None:
            self.logger.debug("No data flow in %s statement", statement.key)
            return NoOpCommand(statement.key)
        return handler(statement)

    # --------------- helpers ---------------
    def _qualified(self, table: exp.Table) -> QualifiedName:
        return self.catalog.canonical_name(table_parts_of(table))

    def _statement_ctes(self, node: exp.Expression) -> CteEnv:
        return self._with_ctes(node, None)

    # --------------- INSERT ---------------
    def _plan_insert(self, node: exp.Insert) -> PlanNode:
        ctes = self._statement_ctes(node)
        target = node.this
        query = node.expression
        if query is None:
            raise PlanningError("INSERT without a query or VALUES")
        child = self.plan_query(query, ctes=ctes)
        if isinstance(target, exp.Directory):
            path = target.this.name if isinstance(target.this, exp.Expression) else str(target.this)
            return InsertIntoDirectory(path, child, local=bool(target.args.get("local")))
        table = _target_table(target)
        if table is None:
            raise PlanningError(f"Unsupported INSERT target: {expr_sql(target, self.dialect)}")
        qname = self._qualified(table)
        definition = self.catalog.table(qname)
        if definition is None:
            raise UnresolvedPlanError(f"Table not found: {qname}", details={"table": str(qname)})
        columns = _schema_names(target)
        partition = self._partition_spec(node, target, definition.columns)
        insert = InsertIntoTable(
            qname,
            definition.columns,
            child,
            partition=partition,
            columns=columns,
            overwrite=bool(node.args.get("overwrite")),
        )
        static = set(insert.static_partitions)
        expected = [c for c in (columns or definition.columns) if c not in static]
        if len(expected) != len(child.output):
            raise UnresolvedPlanError(
                f"Cannot write to {qname}: query produces {len(child.output)} columns, "
                f"table expects {len(expected)}",
                details={"table": str(qname), "expected": expected},
            )
        return insert

    def _partition_spec(
        self, insert: exp.Insert, target: exp.Expression, table_columns: Tuple[str, ...]
    ) -> Tuple[Tuple[str, Optional[Literal]], ...]:
        partition = target.find(exp.Partition)
        if partition is None:
            partition = insert.args.get("partition")
        if not isinstance(partition, exp.Partition):
            return ()
        spec = []
        for item in partition.expressions:
            if isinstance(item, exp.EQ):
                name = normalize_identifier(item.this.name)
                value = item.expression
                spec.append((name, Literal(value.name if not isinstance(value, exp.Null) else None)))
            else:
                spec.append((normalize_identifier(item.name), None))
        for name, _ in spec:
            if name not in table_columns:
                raise UnresolvedPlanError(f"Partition column '{name}' is not a column of the table")
        return tuple(spec)

    # --------------- CREATE ---------------
    def _plan_create(self, node: exp.Create) -> PlanNode:
        kind = (node.args.get("kind") or "").upper()
        table = _target_table(node.this)
        if table is None or kind not in ("TABLE", "VIEW"):
            return NoOpCommand(f"create {kind.lower()}".strip())
        qname = self._qualified(table)
        query = node.expression
        if query is not None and unwrap_query(query) is not None:
            ctes = self._statement_ctes(node)
            child = self.plan_query(query, ctes=ctes)
            names = _schema_names(node.this)
            if names is not None and len(names) != len(child.output):
                raise UnresolvedPlanError(
                    f"{qname} declares {len(names)} columns but its query produces {len(child.output)}",
                    details={"target": str(qname)},
                )
            if kind == "VIEW":
                return CreateView(qname, child, column_names=names, replace=bool(node.args.get("replace")))
            return CreateTableAsSelect(qname, child, column_names=names)
        if kind == "VIEW":
            return NoOpCommand("create view", qname)
        columns = _schema_names(node.this) or ()
        partitions = self._partitioned_by(node)
        columns = columns + tuple(p for p in partitions if p not in columns)
        return CreateTable(qname, columns, partitions)

    @staticmethod
    def _partitioned_by(node: exp.Create) -> Tuple[str, ...]:
        properties = node.args.get("properties")
        if properties is None:
            return ()
        prop = properties.find(exp.PartitionedByProperty)
        if prop is None:
            return ()
        this = prop.this
        items = this.expressions if isinstance(this, (exp.Schema, exp.Tuple)) else [this]
        return tuple(normalize_identifier(i.name) for i in items)

    def _plan_alter(self, node: exp.Expression) -> PlanNode:
        # ALTER VIEW v AS <query>
        kind = (node.args.get("kind") or "").upper()
        queries = [a for a in node.args.get("actions") or [] if unwrap_query(a) is not None]
        table = _target_table(node.this)
        if kind != "VIEW" or not queries or table is None:
            return NoOpCommand("alter")
        return CreateView(self._qualified(table), self.plan_query(queries[0]), replace=True)

    # --------------- MERGE ---------------
    def _plan_merge(self, node: exp.Merge) -> PlanNode:
        ctes = self._statement_ctes(node)
        target_table = _target_table(node.this)
        if target_table is None:
            raise PlanningError(f"Unsupported MERGE target: {expr_sql(node.this, self.dialect)}")
        qname = self._qualified(target_table)
        relation = self.plan_relation(target_table)
        target_alias = normalize_identifier(alias_to_str(target_table.args.get("alias")))
        target_source = Source(target_alias or qname.table, relation.output, table=None if target_alias else qname)
        source_plan, source = self._plan_from_item(node.args["using"], None, ctes)

        both = Scope([target_source, source])
        source_only = Scope([source])
        condition = ExpressionPlanner(self, both, ctes).convert(node.args["on"])

        whens = node.args.get("whens")
        clauses = whens.expressions if whens is not None else node.expressions
        actions = tuple(self._merge_action(w, relation.output, both, source_only, ctes) for w in clauses)
        return MergeIntoTable(qname, relation, source_plan, actions, condition)

    def _merge_action(
        self,
        when: exp.When,
        destination: Tuple[Attribute, ...],
        both: Scope,
        source_only: Scope,
        ctes: CteEnv,
    ) -> MergeAction:
        matched = bool(when.args.get("matched"))
        then = when.args.get("then")
        condition = when.args.get("condition")
        scope = both if matched else source_only
        converter = ExpressionPlanner(self, scope, ctes)
        cond = converter.convert(condition) if condition is not None else None
        names = {a.name for a in destination}

        if isinstance(then, exp.Update):
            sets = then.args.get("expressions")
            sets = sets if isinstance(sets, list) else [sets] if sets is not None else []
            if any(isinstance(s, exp.Star) for s in sets):
                return MergeAction("update", matched, star=True, condition=cond)
            assignments = []
            for eq in sets:
                name = normalize_identifier(eq.this.name)
                if name not in names:
                    raise UnresolvedPlanError(f"MERGE UPDATE sets unknown column '{name}'")
                assignments.append((name, converter.convert(eq.expression)))
            return MergeAction("update", matched, tuple(assignments), condition=cond)

        if isinstance(then, exp.Insert):
            if isinstance(then.this, exp.Star):
                return MergeAction("insert", matched, star=True, condition=cond)
            columns = then.this.expressions if isinstance(then.this, exp.Tuple) else [then.this]
            values = then.expression.expressions if isinstance(then.expression, exp.Tuple) else [then.expression]
            if len(columns) != len(values):
                raise UnresolvedPlanError("MERGE INSERT column and value counts differ")
            assignments = []
            for column, value in zip(columns, values):
                name = normalize_identifier(column.name)
                if name not in names:
                    raise UnresolvedPlanError(f"MERGE INSERT names unknown column '{name}'")
                assignments.append((name, converter.convert(value)))
            return MergeAction("insert", matched, tuple(assignments), condition=cond)

        return MergeAction("delete", matched, condition=cond)

    # --------------- cache / drop ---------------
    def _plan_cache(self, node: exp.Cache) -> PlanNode:
        return NoOpCommand("cache", self._qualified(node.this))

    def _plan_uncache(self, node: exp.Uncache) -> PlanNode:
        return NoOpCommand("uncache", self._qualified(node.this))

    def _plan_drop(self, node: exp.Drop) -> PlanNode:
        table = _target_table(node.this)
        return NoOpCommand("drop", self._qualified(table) if table is not None else None)

    def plan_cached_query(self, node: exp.Cache) -> Optional[PlanNode]:
        """Defining plan of ``CACHE TABLE name AS <query>``; ``None`` for caching a plain table."""
        query = node.expression
        if query is None or unwrap_query(query) is None:
            return None
        return self.plan_query(query)
