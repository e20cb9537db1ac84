"""Typed representation of a resolved relational plan.

Plan nodes are frozen dataclasses compared by identity (``eq=False``): two
structurally identical sub-plans are still two plan instances. Every node
exposes ``kind``, ``children`` and an ordered ``output`` tuple of
:class:`Attribute`. Expressions are frozen value objects.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, ClassVar, Hashable, Iterator, Optional, Tuple

COUNT_COLUMN = "__count__"
DEFAULT_DATABASE = "default"


@dataclass(frozen=True, order=True)
class ColumnId:
    value: int

    def __str__(self) -> str:
        return f"#{self.value}"


@dataclass(frozen=True)
class QualifiedName:
    """Canonical table identifier; parts are lower-cased so comparison is case-insensitive."""

    table: str
    database: str = DEFAULT_DATABASE
    catalog: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "table", self.table.lower())
        object.__setattr__(self, "database", (self.database or DEFAULT_DATABASE).lower())
        if self.catalog is not None:
            object.__setattr__(self, "catalog", self.catalog.lower())

    @property
    def parts(self) -> Tuple[str, ...]:
        if self.catalog:
            return (self.catalog, self.database, self.table)
        return (self.database, self.table)

    def __str__(self) -> str:
        return ".".join(self.parts)


@dataclass(frozen=True)
class SourceColumnRef:
    table: QualifiedName
    column: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "column", self.column.lower())

    @property
    def is_count(self) -> bool:
        return self.column == COUNT_COLUMN

    def __str__(self) -> str:
        return f"{self.table}.{self.column}"


@dataclass(frozen=True)
class Attribute:
    """One output column: a stable id plus the display name at this point of the tree."""

    id: ColumnId
    name: str

    def ref(self) -> "AttributeRef":
        return AttributeRef(self.id, self.name)

    def renamed(self, name: str) -> "Attribute":
        return Attribute(self.id, name)


# ---------------------------------------------------------------------------
# Expressions
# ---------------------------------------------------------------------------


class Expression:
    """Base class for plan expressions."""

    def children(self) -> Tuple["Expression", ...]:
        return ()

    def walk(self) -> Iterator["Expression"]:
        yield self
        for child in self.children():
            yield from child.walk()


@dataclass(frozen=True)
class AttributeRef(Expression):
    id: ColumnId
    name: str


@dataclass(frozen=True)
class UnresolvedAttribute(Expression):
    name: str


@dataclass(frozen=True)
class Literal(Expression):
    value: Any = None

    @property
    def is_null(self) -> bool:
        return self.value is None


@dataclass(frozen=True)
class FunctionCall(Expression):
    name: str
    args: Tuple[Expression, ...] = ()

    def children(self) -> Tuple[Expression, ...]:
        return self.args


@dataclass(frozen=True)
class CaseWhen(Expression):
    branches: Tuple[Tuple[Expression, Expression], ...]
    default: Optional[Expression] = None
    operand: Optional[Expression] = None

    def children(self) -> Tuple[Expression, ...]:
        out = [self.operand] if self.operand is not None else []
        for cond, value in self.branches:
            out.extend((cond, value))
        if self.default is not None:
            out.append(self.default)
        return tuple(out)


@dataclass(frozen=True)
class AggregateCall(Expression):
    name: str
    args: Tuple[Expression, ...] = ()
    is_count_star: bool = False
    is_distinct: bool = False

    def children(self) -> Tuple[Expression, ...]:
        return self.args


@dataclass(frozen=True)
class WindowExpression(Expression):
    function: Expression
    partition_by: Tuple[Expression, ...] = ()
    order_by: Tuple[Expression, ...] = ()

    def children(self) -> Tuple[Expression, ...]:
        return (self.function, *self.partition_by, *self.order_by)


@dataclass(frozen=True)
class ScalarSubquery(Expression):
    plan: "PlanNode"


@dataclass(frozen=True)
class PredicateSubquery(Expression):
    """``EXISTS`` / ``IN`` subquery; ``operand`` is the left side of ``IN``."""

    plan: "PlanNode"
    kind: str = "exists"
    operand: Optional[Expression] = None
    negated: bool = False
    correlated_only: bool = False

    def children(self) -> Tuple[Expression, ...]:
        return (self.operand,) if self.operand is not None else ()


@dataclass(frozen=True)
class Projection:
    """Named output of a select list: the expression and the attribute it produces."""

    expression: Expression
    attribute: Attribute


# ---------------------------------------------------------------------------
# Plan nodes
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class PlanNode:
    """Base class of every operator. Subclasses define ``output`` as a field or property."""

    kind: ClassVar[str] = "node"

    @property
    def children(self) -> Tuple["PlanNode", ...]:
        return ()

    def walk(self) -> Iterator["PlanNode"]:
        yield self
        for child in self.children:
            yield from child.walk()


@dataclass(frozen=True, eq=False)
class Relation(PlanNode):
    """Leaf over a catalog table, a view or a cached relation.

    ``cache_key`` carries an instance identity for anonymous cached plans; the
    bridge is asked for ``cache_key`` when set and for ``table`` otherwise.
    """

    kind: ClassVar[str] = "relation"

    table: Optional[QualifiedName]
    output: Tuple[Attribute, ...]
    cache_key: Optional[Hashable] = None

    @property
    def lookup_key(self) -> Hashable:
        return self.cache_key if self.cache_key is not None else self.table


@dataclass(frozen=True, eq=False)
class LocalRelation(PlanNode):
    kind: ClassVar[str] = "local_relation"

    output: Tuple[Attribute, ...] = ()
    rows: Tuple[Tuple[Expression, ...], ...] = ()


@dataclass(frozen=True, eq=False)
class Project(PlanNode):
    kind: ClassVar[str] = "project"

    child: PlanNode
    projections: Tuple[Projection, ...]

    @property
    def children(self) -> Tuple[PlanNode, ...]:
        return (self.child,)

    @property
    def output(self) -> Tuple[Attribute, ...]:
        return tuple(p.attribute for p in self.projections)


@dataclass(frozen=True, eq=False)
class Filter(PlanNode):
    kind: ClassVar[str] = "filter"

    child: PlanNode
    condition: Expression

    @property
    def children(self) -> Tuple[PlanNode, ...]:
        return (self.child,)

    @property
    def output(self) -> Tuple[Attribute, ...]:
        return self.child.output


@dataclass(frozen=True, eq=False)
class Aggregate(PlanNode):
    kind: ClassVar[str] = "aggregate"

    child: PlanNode
    groupings: Tuple[Expression, ...]
    projections: Tuple[Projection, ...]

    @property
    def children(self) -> Tuple[PlanNode, ...]:
        return (self.child,)

    @property
    def output(self) -> Tuple[Attribute, ...]:
        return tuple(p.attribute for p in self.projections)


@dataclass(frozen=True, eq=False)
class Expand(PlanNode):
    """Grouping-sets expansion: one projection row per grouping-set branch.

    ``projections[b][i]`` is the value of ``output[i]`` in branch ``b``; a
    null literal marks a column excluded from that branch.
    """

    kind: ClassVar[str] = "expand"

    child: PlanNode
    projections: Tuple[Tuple[Expression, ...], ...]
    output: Tuple[Attribute, ...]

    @property
    def children(self) -> Tuple[PlanNode, ...]:
        return (self.child,)


@dataclass(frozen=True, eq=False)
class Join(PlanNode):
    kind: ClassVar[str] = "join"

    left: PlanNode
    right: PlanNode
    join_type: str = "inner"
    condition: Optional[Expression] = None

    @property
    def children(self) -> Tuple[PlanNode, ...]:
        return (self.left, self.right)

    @property
    def output(self) -> Tuple[Attribute, ...]:
        if self.join_type in ("semi", "anti"):
            return self.left.output
        return self.left.output + self.right.output


@dataclass(frozen=True, eq=False)
class SetOperation(PlanNode):
    kind: ClassVar[str] = "set_operation"

    inputs: Tuple[PlanNode, ...]
    output: Tuple[Attribute, ...]
    operation: str = "union"
    distinct: bool = False

    @property
    def children(self) -> Tuple[PlanNode, ...]:
        return self.inputs


@dataclass(frozen=True, eq=False)
class Window(PlanNode):
    kind: ClassVar[str] = "window"

    child: PlanNode
    window_expressions: Tuple[Projection, ...]

    @property
    def children(self) -> Tuple[PlanNode, ...]:
        return (self.child,)

    @property
    def output(self) -> Tuple[Attribute, ...]:
        return self.child.output + tuple(p.attribute for p in self.window_expressions)


@dataclass(frozen=True, eq=False)
class SubqueryAlias(PlanNode):
    kind: ClassVar[str] = "subquery_alias"

    child: PlanNode
    alias: str

    @property
    def children(self) -> Tuple[PlanNode, ...]:
        return (self.child,)

    @property
    def output(self) -> Tuple[Attribute, ...]:
        return self.child.output


@dataclass(frozen=True, eq=False)
class Sort(PlanNode):
    kind: ClassVar[str] = "sort"

    child: PlanNode
    order: Tuple[Expression, ...] = ()

    @property
    def children(self) -> Tuple[PlanNode, ...]:
        return (self.child,)

    @property
    def output(self) -> Tuple[Attribute, ...]:
        return self.child.output


@dataclass(frozen=True, eq=False)
class Limit(PlanNode):
    kind: ClassVar[str] = "limit"

    child: PlanNode
    limit: Optional[Expression] = None

    @property
    def children(self) -> Tuple[PlanNode, ...]:
        return (self.child,)

    @property
    def output(self) -> Tuple[Attribute, ...]:
        return self.child.output


@dataclass(frozen=True, eq=False)
class Distinct(PlanNode):
    kind: ClassVar[str] = "distinct"

    child: PlanNode

    @property
    def children(self) -> Tuple[PlanNode, ...]:
        return (self.child,)

    @property
    def output(self) -> Tuple[Attribute, ...]:
        return self.child.output


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@dataclass(frozen=True, eq=False)
class Command(PlanNode):
    """Statement that writes somewhere. ``query`` is the plan producing the rows, if any."""

    kind: ClassVar[str] = "command"

    @property
    def query(self) -> Optional[PlanNode]:
        return None

    @property
    def children(self) -> Tuple[PlanNode, ...]:
        return (self.query,) if self.query is not None else ()

    @property
    def output(self) -> Tuple[Attribute, ...]:
        return ()


@dataclass(frozen=True, eq=False)
class InsertIntoTable(Command):
    """``INSERT INTO/OVERWRITE``.

    ``table_columns`` is the destination schema (partition columns last).
    ``partition`` lists ``(column, value)``; a ``None`` value is a dynamic
    partition. ``columns`` is the user-specified column list, if any.
    """

    kind: ClassVar[str] = "insert_into_table"

    target: QualifiedName
    table_columns: Tuple[str, ...]
    child: PlanNode
    partition: Tuple[Tuple[str, Optional[Literal]], ...] = ()
    columns: Optional[Tuple[str, ...]] = None
    overwrite: bool = False

    @property
    def query(self) -> Optional[PlanNode]:
        return self.child

    @property
    def static_partitions(self) -> Tuple[str, ...]:
        return tuple(name for name, value in self.partition if value is not None)


@dataclass(frozen=True, eq=False)
class CreateTableAsSelect(Command):
    kind: ClassVar[str] = "create_table_as_select"

    target: QualifiedName
    child: PlanNode
    column_names: Optional[Tuple[str, ...]] = None

    @property
    def query(self) -> Optional[PlanNode]:
        return self.child


@dataclass(frozen=True, eq=False)
class CreateView(Command):
    kind: ClassVar[str] = "create_view"

    target: QualifiedName
    child: PlanNode
    column_names: Optional[Tuple[str, ...]] = None
    replace: bool = False

    @property
    def query(self) -> Optional[PlanNode]:
        return self.child


@dataclass(frozen=True, eq=False)
class InsertIntoDirectory(Command):
    kind: ClassVar[str] = "insert_into_directory"

    path: str
    child: PlanNode
    local: bool = False

    @property
    def query(self) -> Optional[PlanNode]:
        return self.child


@dataclass(frozen=True)
class MergeAction:
    """One ``WHEN [NOT] MATCHED`` clause. ``star`` marks ``UPDATE SET *`` / ``INSERT *``."""

    kind: str
    matched: bool
    assignments: Tuple[Tuple[str, Expression], ...] = ()
    star: bool = False
    condition: Optional[Expression] = None


@dataclass(frozen=True, eq=False)
class MergeIntoTable(Command):
    kind: ClassVar[str] = "merge_into_table"

    target: QualifiedName
    target_relation: PlanNode
    source: PlanNode
    actions: Tuple[MergeAction, ...] = ()
    condition: Optional[Expression] = None

    @property
    def query(self) -> Optional[PlanNode]:
        return self.source

    @property
    def children(self) -> Tuple[PlanNode, ...]:
        return (self.target_relation, self.source)


@dataclass(frozen=True, eq=False)
class CreateTable(Command):
    """``CREATE TABLE`` with column definitions only; carries no query."""

    kind: ClassVar[str] = "create_table"

    target: QualifiedName
    columns: Tuple[str, ...] = ()
    partition_columns: Tuple[str, ...] = ()


@dataclass(frozen=True, eq=False)
class NoOpCommand(Command):
    kind: ClassVar[str] = "noop_command"

    statement: str = ""
    name: Optional[QualifiedName] = None

    @property
    def query(self) -> Optional[PlanNode]:
        return None
