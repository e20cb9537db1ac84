import pytest

from plan_lineage.core.attributes import ColumnIdAllocator
from plan_lineage.core.catalog import CacheKey, CacheOverlay, CacheRegistry, EmptyBridge, InMemoryCatalog, canonical_name
from plan_lineage.core.plan import Project, Projection, QualifiedName, Relation
from plan_lineage.errors import UnresolvedPlanError

ids = ColumnIdAllocator()


def _plan(table: str = "t", *columns: str):
    relation = Relation(canonical_name(table), ids.attributes(columns or ("a",)))
    return Project(relation, tuple(Projection(a.ref(), a) for a in relation.output))


@pytest.mark.parametrize(
    "identifier, expected",
    [
        ("t", QualifiedName("t", "default")),
        ("DB.T", QualifiedName("t", "db")),
        ("`db`.`t`", QualifiedName("t", "db")),
        ("spark_catalog.db.t", QualifiedName("t", "db")),
        ("v2_catalog.db.t", QualifiedName("t", "db", "v2_catalog")),
        (["Db", "T"], QualifiedName("t", "db")),
    ],
)
def test_canonical_name(identifier, expected):
    assert canonical_name(identifier) == expected


def test_canonical_name_rejects_empty():
    with pytest.raises(UnresolvedPlanError):
        canonical_name("")


def test_qualified_name_rendering():
    assert str(QualifiedName("T", "DB")) == "db.t"
    assert str(QualifiedName("t", "db", "cat")) == "cat.db.t"


def test_register_table_moves_partitions_last():
    catalog = InMemoryCatalog()
    table = catalog.register_table("db.t", ["p", "a", "b"], ["p"])
    assert table.columns == ("a", "b", "p")
    assert catalog.table("DB.T") is table


def test_custom_default_database():
    catalog = InMemoryCatalog(default_database="Sales")
    catalog.register_table("orders", ["id"])
    assert catalog.table("sales.orders") is not None


def test_cache_shadows_view_and_view_shadows_nothing_after_drop():
    catalog = InMemoryCatalog()
    catalog.register_table("t", ["a"])
    view_plan = _plan("t")
    cached_plan = _plan("t")
    catalog.register_view("v", view_plan)
    assert catalog.resolve_defining_plan("v") is view_plan
    catalog.cache_table("v", cached_plan)
    assert catalog.resolve_defining_plan(QualifiedName("v")) is cached_plan
    assert catalog.uncache_table("v")
    assert catalog.resolve_defining_plan("v") is view_plan
    assert catalog.drop("v")
    assert catalog.resolve_defining_plan("v") is None
    assert catalog.resolve_defining_plan("t") is None


def test_register_table_replaces_view():
    catalog = InMemoryCatalog()
    catalog.register_view("v", _plan())
    catalog.register_table("v", ["a"])
    assert catalog.view("v") is None


def test_cache_keys_are_instance_tokens():
    registry = CacheRegistry()
    plan = _plan()
    first = registry.cache_plan(plan, "df")
    second = registry.cache_plan(plan, "df")
    assert first != second
    assert registry.lookup(first) is plan
    assert "df" in str(first)
    assert registry.uncache(first)
    assert registry.lookup(first) is None
    assert registry.keys() == [second]


def test_cache_key_label_does_not_affect_identity():
    assert CacheKey(token=7, label="a") == CacheKey(token=7, label="b")


def test_cache_overlay_consults_cache_then_bridge():
    catalog = InMemoryCatalog()
    view_plan = _plan()
    catalog.register_view("v", view_plan)
    registry = CacheRegistry()
    cached = _plan()
    registry.register(QualifiedName("c"), cached)
    overlay = CacheOverlay(registry, catalog)
    assert overlay.resolve_defining_plan("c") is cached
    assert overlay.resolve_defining_plan("v") is view_plan
    assert overlay.resolve_defining_plan("missing") is None


def test_empty_bridge():
    bridge = EmptyBridge()
    assert bridge.resolve_defining_plan(QualifiedName("t")) is None
    assert bridge.canonical_name("x") == QualifiedName("x")
