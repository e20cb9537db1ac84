from dataclasses import dataclass
from typing import Optional

import pytest

from plan_lineage import Lineage, extract_lineage
from plan_lineage.core.attributes import ColumnIdAllocator
from plan_lineage.core.binder import TargetBinder
from plan_lineage.core.plan import (
    Command,
    CreateTable,
    CreateTableAsSelect,
    CreateView,
    FunctionCall,
    InsertIntoDirectory,
    InsertIntoTable,
    Literal,
    MergeAction,
    MergeIntoTable,
    NoOpCommand,
    PlanNode,
    Project,
    Projection,
    QualifiedName,
    Relation,
)
from plan_lineage.core.propagator import LineagePropagator
from plan_lineage.errors import UnresolvedPlanError

ids = ColumnIdAllocator()

SOURCE = QualifiedName("test_table0", "test_db0")
TARGET = QualifiedName("tb0", "db", "v2_catalog")


def _source():
    return Relation(SOURCE, ids.attributes(["key", "value"]))


def _bind(plan: PlanNode) -> Lineage:
    return TargetBinder(LineagePropagator()).bind(plan)


@dataclass(frozen=True, eq=False)
class TruncateAndLoad(Command):
    kind = "truncate_and_load"

    child: Optional[PlanNode] = None

    @property
    def query(self):
        return self.child


def test_insert_zips_schema_order():
    child = _source()
    plan = InsertIntoTable(TARGET, ("col1", "col2"), child)
    assert _bind(plan) == Lineage(
        ["test_db0.test_table0"],
        ["v2_catalog.db.tb0"],
        [("v2_catalog.db.tb0.col1", {"test_db0.test_table0.key"}), ("v2_catalog.db.tb0.col2", {"test_db0.test_table0.value"})],
    )


def test_static_partition_is_constant():
    src = _source()
    child = Project(src, (Projection(src.output[0].ref(), src.output[0].renamed("col1")),))
    plan = InsertIntoTable(TARGET, ("col1", "col2"), child, partition=(("col2", Literal("bb")),))
    assert _bind(plan) == Lineage(
        ["test_db0.test_table0"],
        ["v2_catalog.db.tb0"],
        [("v2_catalog.db.tb0.col1", {"test_db0.test_table0.key"}), ("v2_catalog.db.tb0.col2", set())],
    )


def test_dynamic_partition_binds_positionally():
    plan = InsertIntoTable(TARGET, ("col1", "col2"), _source(), partition=(("col2", None),))
    assert _bind(plan).columns[1] == ("v2_catalog.db.tb0.col2", frozenset({"test_db0.test_table0.value"}))


def test_insert_column_count_mismatch():
    plan = InsertIntoTable(TARGET, ("a", "b", "c"), _source())
    with pytest.raises(UnresolvedPlanError):
        _bind(plan)


def test_insert_column_list_fills_unlisted_columns():
    plan = InsertIntoTable(TARGET, ("a", "b", "c"), _source(), columns=("c", "a"))
    assert _bind(plan).columns == (
        ("v2_catalog.db.tb0.a", frozenset({"test_db0.test_table0.value"})),
        ("v2_catalog.db.tb0.b", frozenset()),
        ("v2_catalog.db.tb0.c", frozenset({"test_db0.test_table0.key"})),
    )


def test_ctas_and_view_prefer_declared_names():
    target = QualifiedName("v")
    view = CreateView(target, _source(), column_names=("a", "b"))
    assert _bind(view).column_names() == ["default.v.a", "default.v.b"]
    ctas = CreateTableAsSelect(target, _source())
    assert _bind(ctas).column_names() == ["default.v.key", "default.v.value"]


def test_directory_target_is_backticked():
    plan = InsertIntoDirectory("/tmp/out", _source())
    assert _bind(plan) == Lineage(
        ["test_db0.test_table0"],
        ["`/tmp/out`"],
        [("`/tmp/out`.key", {"test_db0.test_table0.key"}), ("`/tmp/out`.value", {"test_db0.test_table0.value"})],
    )


def test_commands_without_query_have_no_lineage():
    assert _bind(CreateTable(QualifiedName("t"), ("a", "b"))) == Lineage()
    assert _bind(NoOpCommand("cache", QualifiedName("t"))) == Lineage()


def _merge(*actions: MergeAction):
    target = Relation(TARGET, ids.attributes(["id", "name"]))
    source = Relation(QualifiedName("source_t", "db", "v2_catalog"), ids.attributes(["id", "name"]))
    return target, source, MergeIntoTable(TARGET, target, source, actions)


def test_merge_unions_every_clause():
    target, source, _ = _merge()
    _, t_name = target.output
    s_id, s_name = source.output
    plan = MergeIntoTable(
        TARGET,
        target,
        source,
        (
            MergeAction("update", True, (("name", FunctionCall("concat", (t_name.ref(), s_name.ref()))),)),
            MergeAction("insert", False, (("id", s_id.ref()), ("name", Literal("n/a")))),
            MergeAction("delete", True),
        ),
    )
    assert _bind(plan) == Lineage(
        ["v2_catalog.db.source_t"],
        ["v2_catalog.db.tb0"],
        [
            ("v2_catalog.db.tb0.id", {"v2_catalog.db.source_t.id"}),
            ("v2_catalog.db.tb0.name", {"v2_catalog.db.tb0.name", "v2_catalog.db.source_t.name"}),
        ],
    )


def test_merge_star_assigns_by_position():
    _, _, plan = _merge(MergeAction("update", True, star=True), MergeAction("insert", False, star=True))
    assert _bind(plan).columns == (
        ("v2_catalog.db.tb0.id", frozenset({"v2_catalog.db.source_t.id"})),
        ("v2_catalog.db.tb0.name", frozenset({"v2_catalog.db.source_t.name"})),
    )


def test_merge_unknown_column():
    _, _, plan = _merge(MergeAction("insert", False, (("price", Literal(1)),)))
    with pytest.raises(UnresolvedPlanError):
        _bind(plan)


def test_unknown_command_reports_query_lineage_with_warning():
    result = extract_lineage(TruncateAndLoad(_source()))
    assert result.ok
    assert result.lineage == Lineage(
        ["test_db0.test_table0"], [], [("key", {"test_db0.test_table0.key"}), ("value", {"test_db0.test_table0.value"})]
    )
    assert [w.kind for w in result.warnings] == ["truncate_and_load"]


def test_unknown_command_without_query():
    result = extract_lineage(TruncateAndLoad())
    assert result.unwrap() == Lineage()
    assert len(result.warnings) == 1


def test_extraction_errors_are_returned():
    result = extract_lineage(InsertIntoTable(TARGET, ("a",), _source()))
    assert not result.ok
    assert isinstance(result.error, UnresolvedPlanError)
    with pytest.raises(UnresolvedPlanError):
        result.unwrap()


def test_lineage_record_dedupes_sources_and_targets():
    record = Lineage(["db.a", "db.b", "db.a"], ["db.t", "db.t"], [("x", {"db.a.x"}), ("x", set())])
    assert record.sources == ("db.a", "db.b")
    assert record.targets == ("db.t",)
    assert record.column_names() == ["x", "x"]
