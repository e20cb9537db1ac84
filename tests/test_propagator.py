from dataclasses import dataclass
from typing import Tuple

from plan_lineage import Lineage, LineageConfig, LineageExtractor, extract_lineage
from plan_lineage.core import identity_of
from plan_lineage.core.attributes import ColumnIdAllocator, LineageScope
from plan_lineage.core.catalog import CacheRegistry, InMemoryCatalog
from plan_lineage.core.plan import (
    Aggregate,
    AggregateCall,
    Attribute,
    Expand,
    Filter,
    FunctionCall,
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
    SubqueryAlias,
    UnresolvedAttribute,
    Window,
    WindowExpression,
)
from plan_lineage.core.propagator import LineagePropagator
from plan_lineage.errors import CyclicDefinitionError, UnresolvedPlanError, UnsupportedOperatorError

ids = ColumnIdAllocator()


def _table(name: str, *columns: str) -> Relation:
    db, _, table = name.rpartition(".")
    return Relation(QualifiedName(table, db or "default"), ids.attributes(columns))


def _col(node: PlanNode, name: str) -> Attribute:
    return next(a for a in node.output if a.name == name)


def _alias(expr, name: str) -> Projection:
    return Projection(expr, ids.attribute(name))


def _keep(node: PlanNode, *names: str) -> Tuple[Projection, ...]:
    return tuple(Projection(_col(node, n).ref(), _col(node, n)) for n in names)


@dataclass(frozen=True, eq=False)
class Sample(PlanNode):
    kind = "sample"

    child: PlanNode
    fraction: float = 0.1

    @property
    def children(self):
        return (self.child,)

    @property
    def output(self):
        return self.child.output


@dataclass(frozen=True, eq=False)
class Generate(PlanNode):
    kind = "generate"

    child: PlanNode
    output: Tuple[Attribute, ...] = ()

    @property
    def children(self):
        return (self.child,)


def test_base_relation_maps_every_column():
    t = _table("db.t", "a", "b")
    result = extract_lineage(t)
    assert result.ok
    assert result.lineage == Lineage(["db.t"], [], [("a", {"db.t.a"}), ("b", {"db.t.b"})])


def test_project_rename_keeps_identity_and_literals_are_empty():
    t = _table("db.t", "a", "b")
    a = _col(t, "a")
    plan = Project(
        t,
        (
            Projection(a.ref(), a.renamed("x")),
            _alias(Literal(1), "one"),
            _alias(FunctionCall("concat", (a.ref(), _col(t, "b").ref())), "ab"),
        ),
    )
    assert extract_lineage(plan).unwrap() == Lineage(
        ["db.t"], [], [("x", {"db.t.a"}), ("one", set()), ("ab", {"db.t.a", "db.t.b"})]
    )


def test_unsupported_operator_falls_back_to_positional_passthrough():
    t = _table("db.t", "a")
    result = extract_lineage(Sample(t))
    assert result.ok
    assert result.lineage == Lineage(["db.t"], [], [("a", {"db.t.a"})])
    assert [w.kind for w in result.warnings] == ["sample"]
    assert isinstance(result.warnings[0], UnsupportedOperatorError)


def test_fallback_with_different_arity_yields_empty_columns():
    t = _table("db.t", "a")
    plan = Generate(t, ids.attributes(["a", "exploded"]))
    result = extract_lineage(plan)
    assert result.lineage == Lineage(["db.t"], [], [("a", set()), ("exploded", set())])
    assert len(result.warnings) == 1


def test_view_defined_over_itself_is_cyclic():
    catalog = InMemoryCatalog()
    inner = _table("v", "a")
    catalog.register_view("v", Project(inner, _keep(inner, "a")))
    result = extract_lineage(_table("v", "a"), catalog)
    assert not result.ok
    assert isinstance(result.error, CyclicDefinitionError)
    assert result.error.key == QualifiedName("v")


def test_view_is_inlined_by_position():
    catalog = InMemoryCatalog()
    base = _table("db.t", "a", "b")
    catalog.register_view("db.v", Project(base, _keep(base, "b", "a")))
    leaf = Relation(QualifiedName("v", "db"), ids.attributes(["first", "second"]))
    assert extract_lineage(leaf, catalog).unwrap() == Lineage(
        ["db.t"], [], [("first", {"db.t.b"}), ("second", {"db.t.a"})]
    )


def test_instance_cached_plans_over_same_table_stay_distinct():
    cache = CacheRegistry()
    t1 = _table("default.table0", "a", "b")
    t2 = _table("default.table0", "a", "b")
    k1 = cache.cache_plan(Project(t1, _keep(t1, "a")), "df0")
    k2 = cache.cache_plan(Project(t2, _keep(t2, "b")), "df1")
    assert k1 != k2
    left = Relation(None, ids.attributes(["a"]), cache_key=k1)
    right = Relation(None, ids.attributes(["b"]), cache_key=k2)
    plan = Project(
        Join(left, right),
        (Projection(left.output[0].ref(), left.output[0].renamed("aa")), Projection(right.output[0].ref(), right.output[0].renamed("bb"))),
    )
    assert extract_lineage(plan, cache=cache).unwrap() == Lineage(
        ["default.table0"], [], [("aa", {"default.table0.a"}), ("bb", {"default.table0.b"})]
    )


def test_unknown_cache_key_is_unresolved():
    leaf = Relation(None, ids.attributes(["a"]), cache_key="gone")
    result = extract_lineage(leaf, cache=CacheRegistry())
    assert isinstance(result.error, UnresolvedPlanError)


def test_join_lists_left_tables_first():
    left = _table("l", "a")
    right = _table("r", "b")
    result = extract_lineage(Join(right, left, "inner"))
    assert result.lineage.sources == ("default.r", "default.l")


def test_set_operation_is_positional():
    a = _table("a", "x", "y")
    b = _table("b", "y", "x")
    plan = SetOperation((a, b), ids.attributes(["x", "y"]), "union")
    assert extract_lineage(plan).unwrap() == Lineage(
        ["default.a", "default.b"],
        [],
        [("x", {"default.a.x", "default.b.y"}), ("y", {"default.a.y", "default.b.x"})],
    )


def test_set_operation_arity_mismatch():
    a = _table("a", "x", "y")
    b = _table("b", "x")
    plan = SetOperation((a, b), ids.attributes(["x", "y"]), "union")
    assert isinstance(extract_lineage(plan).error, UnresolvedPlanError)


def test_expand_null_filled_column_is_constant():
    t = _table("t", "a", "b")
    a, b = t.output
    gid = ids.attribute("grouping__id")
    ka, kb = ids.attribute("a"), ids.attribute("b")
    expand = Expand(
        t,
        (
            (a.ref(), b.ref(), a.ref(), b.ref(), Literal(0)),
            (a.ref(), b.ref(), a.ref(), Literal(None), Literal(1)),
        ),
        t.output + (ka, kb, gid),
    )
    plan = Aggregate(expand, (ka.ref(), kb.ref(), gid.ref()), (Projection(ka.ref(), ka), Projection(kb.ref(), kb), Projection(gid.ref(), gid)))
    assert extract_lineage(plan).unwrap() == Lineage(
        ["default.t"], [], [("a", {"default.t.a"}), ("b", set()), ("grouping__id", set())]
    )


def test_window_unions_partition_order_and_arguments():
    t = _table("t", "a", "b", "c")
    a, b, c = t.output
    rn = ids.attribute("rn")
    window = Window(t, (Projection(WindowExpression(FunctionCall("row_number"), (a.ref(),), (b.ref(),)), rn),))
    s = ids.attribute("s")
    window2 = Window(window, (Projection(WindowExpression(AggregateCall("sum", (c.ref(),)), (a.ref(),)), s),))
    plan = Project(window2, (Projection(rn.ref(), rn), Projection(s.ref(), s), Projection(c.ref(), c)))
    assert extract_lineage(plan).unwrap() == Lineage(
        ["default.t"],
        [],
        [("rn", {"default.t.a", "default.t.b"}), ("s", {"default.t.a", "default.t.c"}), ("c", {"default.t.c"})],
    )


def test_count_star_binds_sentinel():
    t = _table("t", "a")
    n = ids.attribute("n")
    plan = Aggregate(t, (), (Projection(AggregateCall("count", is_count_star=True), n),))
    assert extract_lineage(plan).unwrap().columns == (("n", frozenset({"default.t.__count__"})),)


def test_filter_predicate_subquery_is_discarded():
    t0 = _table("table0", "a")
    t1 = _table("table1", "a", "c")
    inner = Filter(t1, FunctionCall("eq", (_col(t1, "a").ref(), _col(t0, "a").ref())))
    plan = Filter(t0, PredicateSubquery(Project(inner, _keep(t1, "c")), kind="exists", correlated_only=True))
    result = extract_lineage(plan)
    assert result.unwrap() == Lineage(["default.table0"], [], [("a", {"default.table0.a"})])


def test_correlated_scalar_subquery_reads_outer_scope():
    t0 = _table("table0", "a", "b")
    t1 = _table("table1", "a", "c")
    inner = Project(
        Filter(t1, FunctionCall("eq", (_col(t1, "a").ref(), _col(t0, "a").ref()))),
        _keep(t1, "c"),
    )
    plan = Project(t0, (_alias(FunctionCall("add", (ScalarSubquery(inner), _col(t0, "b").ref())), "x"),))
    assert extract_lineage(plan).unwrap() == Lineage(
        ["default.table1", "default.table0"], [], [("x", {"default.table1.c", "default.table0.b"})]
    )


def test_reference_outside_scope_is_unresolved():
    t = _table("t", "a")
    other = _table("u", "z")
    plan = Project(t, (_alias(_col(other, "z").ref(), "z"),))
    result = extract_lineage(plan)
    assert isinstance(result.error, UnresolvedPlanError)


def test_unresolved_attribute_is_an_error():
    t = _table("t", "a")
    plan = Project(t, (_alias(UnresolvedAttribute("mystery"), "m"),))
    assert isinstance(extract_lineage(plan).error, UnresolvedPlanError)


def test_local_relation_rows_are_unioned():
    t = _table("t", "a")
    sub = ScalarSubquery(Project(t, _keep(t, "a")))
    values = LocalRelation(ids.attributes(["v"]), ((Literal(1),), (sub,)))
    assert extract_lineage(SubqueryAlias(values, "x")).unwrap() == Lineage(
        ["default.t"], [], [("v", {"default.t.a"})]
    )


def test_scope_lookup_falls_back_to_outer():
    t = _table("t", "a")
    a = t.output[0]
    outer = LineageScope({a.id: frozenset({SourceColumnRef(QualifiedName("t"), "a")})})
    inner = outer.nested({})
    assert inner.lookup(a.ref()) == frozenset({SourceColumnRef(QualifiedName("t"), "a")})
    assert a.id in inner


def test_propagator_collects_one_warning_per_fallback():
    t = _table("t", "a")
    propagator = LineagePropagator()
    propagator.propagate(Sample(Sample(t)))
    assert [w.kind for w in propagator.warnings] == ["sample", "sample"]


def test_identity_follows_references_not_expressions():
    ex = LineageExtractor(engine="spark", schema={"t": ["key", "value"]}, config=LineageConfig())
    plan = ex.plan("select key as k, key, upper(key) u, upper(key) u2 from t")
    assert identity_of(plan, 0) == identity_of(plan, 1)
    assert identity_of(plan, 2) != identity_of(plan, 3)
    assert identity_of(plan, 0) not in {identity_of(plan, 2), identity_of(plan, 3)}

    joined = ex.plan("with c as (select key from t) select l.key, r.key from c l join c r on l.key = r.key")
    assert identity_of(joined, 0) != identity_of(joined, 1)
    assert identity_of(joined.child, 0) != identity_of(joined.child, 1)
