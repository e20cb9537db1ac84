import csv
import json
import logging

from plan_lineage import LineageConfig, load_schema_csv, load_schema_file
from plan_lineage.cli import find_sql_files, main
from plan_lineage.config import apply_schema, flatten_schema
from plan_lineage.core.catalog import InMemoryCatalog
from plan_lineage.logger import ROOT_LOGGER, get_logger
from plan_lineage.models import CSV_HEADER

SCHEMA = {"test_db0": {"test_table0": {"key": "int", "value": "string"}}, "sink": ["a", "b"]}

SQL = """
insert into sink select key, value from test_db0.test_table0;
select key, 1 as one from test_db0.test_table0;
"""


def _write_case(tmp_path, sql=SQL, name="case.sql"):
    folder = tmp_path / "sql"
    folder.mkdir(exist_ok=True)
    path = folder / name
    path.write_text(sql, encoding="utf-8")
    return folder, path


def test_flatten_schema_shapes():
    flat = flatten_schema(
        {
            "db": {"t": {"A": "int", "b": "string"}},
            "plain": ["x", "Y"],
            "part": {"columns": ["k", "p"], "partitioned_by": ["p"]},
        }
    )
    assert flat == {
        "db.t": (["a", "b"], []),
        "plain": (["x", "y"], []),
        "part": (["k", "p"], ["p"]),
    }


def test_apply_schema_registers_tables():
    catalog = InMemoryCatalog()
    assert apply_schema(catalog, SCHEMA) == 2
    assert catalog.table("default.sink").columns == ("a", "b")


def test_config_from_env():
    config = LineageConfig.from_env({"LINEAGE_DIALECT": "Hive", "LINEAGE_DEFAULT_DATABASE": "Sales", "LOG_LEVEL": "debug"})
    assert config == LineageConfig(dialect="hive", default_database="sales", log_level="DEBUG")
    assert LineageConfig.from_env({}) == LineageConfig()


def test_load_schema_csv(tmp_path):
    path = tmp_path / "schema.csv"
    path.write_text(
        "database,table,column,data_type,is_partition\n"
        "db,t,A,INT,\n"
        "db,t,dt,string,true\n"
        ",loose,x,,\n",
        encoding="utf-8",
    )
    schema = load_schema_csv(str(path))
    assert schema == {
        "db": {"t": {"columns": {"a": "int", "dt": "string"}, "partitioned_by": ["dt"]}},
        "loose": {"columns": {"x": "unknown"}, "partitioned_by": []},
    }
    assert flatten_schema(schema)["db.t"] == (["a", "dt"], ["dt"])


def test_load_schema_file_requires_object(tmp_path):
    path = tmp_path / "schema.json"
    path.write_text("[1, 2]", encoding="utf-8")
    try:
        load_schema_file(str(path))
    except ValueError as e:
        assert "JSON object" in str(e)
    else:
        raise AssertionError("expected ValueError")


def test_find_sql_files_is_recursive(tmp_path):
    folder, _ = _write_case(tmp_path)
    nested = folder / "nested"
    nested.mkdir()
    (nested / "more.sql").write_text("select 1", encoding="utf-8")
    assert [p.rsplit("/", 1)[-1] for p in find_sql_files(str(folder))] == ["case.sql", "more.sql"]


def test_cli_writes_csv(tmp_path):
    folder, path = _write_case(tmp_path)
    output = tmp_path / "out.csv"
    code = main(["--sql-folder", str(folder), "--output", str(output), "--schema", json.dumps(SCHEMA)])
    assert code == 0
    with open(output, newline="", encoding="utf-8") as f:
        rows = list(csv.reader(f))
    assert rows[0] == CSV_HEADER
    assert rows[1:] == [
        [str(path), "1", "default.sink", "default.sink.a", "test_db0.test_table0.key"],
        [str(path), "1", "default.sink", "default.sink.b", "test_db0.test_table0.value"],
        [str(path), "2", "", "key", "test_db0.test_table0.key"],
        [str(path), "2", "", "one", ""],
    ]


def test_cli_writes_json_with_file_schema(tmp_path):
    folder, path = _write_case(tmp_path)
    (folder / "case_schema.json").write_text(json.dumps(SCHEMA), encoding="utf-8")
    output = tmp_path / "out.json"
    code = main(["--sql-folder", str(folder), "--output", str(output), "--format", "json"])
    assert code == 0
    payload = json.loads(output.read_text(encoding="utf-8"))
    assert [entry["statement"] for entry in payload] == [1, 2]
    assert payload[0] == {
        "file": str(path),
        "statement": 1,
        "sources": ["test_db0.test_table0"],
        "targets": ["default.sink"],
        "columns": [
            {"name": "default.sink.a", "sources": ["test_db0.test_table0.key"]},
            {"name": "default.sink.b", "sources": ["test_db0.test_table0.value"]},
        ],
    }


def test_cli_schema_csv(tmp_path):
    folder, _ = _write_case(tmp_path, "select key from test_db0.test_table0")
    schema_csv = tmp_path / "schema.csv"
    schema_csv.write_text("database,table,column,data_type\ntest_db0,test_table0,key,int\n", encoding="utf-8")
    output = tmp_path / "out.json"
    code = main(["--sql-folder", str(folder), "--output", str(output), "--format", "json", "--schema-csv", str(schema_csv)])
    assert code == 0
    assert json.loads(output.read_text(encoding="utf-8"))[0]["columns"] == [
        {"name": "key", "sources": ["test_db0.test_table0.key"]}
    ]


def test_cli_skips_failing_statements(tmp_path):
    folder, _ = _write_case(tmp_path, "select nope from missing_table; select 1 as one")
    output = tmp_path / "out.json"
    assert main(["--sql-folder", str(folder), "--output", str(output), "--format", "json"]) == 0
    payload = json.loads(output.read_text(encoding="utf-8"))
    assert [(e["statement"], e["columns"]) for e in payload] == [(2, [{"name": "one", "sources": []}])]


def test_cli_bad_schema_returns_1(tmp_path):
    folder, _ = _write_case(tmp_path)
    assert main(["--sql-folder", str(folder), "--schema-file", str(tmp_path / "missing.json")]) == 1
    assert main(["--sql-folder", str(folder), "--schema", "not json"]) == 1


def test_cli_no_sql_files_returns_2(tmp_path):
    assert main(["--sql-folder", str(tmp_path / "empty"), "--output", str(tmp_path / "out.csv")]) == 2


def test_get_logger_nests_under_package_namespace():
    cli_logger = get_logger("cli", level="debug")
    assert cli_logger.name == "plan_lineage.cli"
    assert cli_logger.level == logging.DEBUG
    assert get_logger("plan_lineage.planner").name == "plan_lineage.planner"

    root = logging.getLogger(ROOT_LOGGER)
    assert len(root.handlers) == 1
    assert not cli_logger.handlers
    assert root.propagate is False
    get_logger(propagate=True)
    assert root.propagate is True
    get_logger()
    assert root.propagate is False
