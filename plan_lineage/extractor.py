from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlglot import expressions as exp

from .config import LineageConfig, apply_schema
from .core.binder import TargetBinder
from .core.catalog import CacheKey, CacheOverlay, CacheRegistry, CatalogBridge, InMemoryCatalog
from .core.plan import (
    CreateTable,
    CreateTableAsSelect,
    CreateView,
    NoOpCommand,
    PlanNode,
    Project,
    Projection,
)
from .core.propagator import LineagePropagator
from .errors import LineageError
from .logger import get_logger
from .models import ExtractionResult, Lineage
from .planner import QueryPlanner


def extract_lineage(
    plan: PlanNode,
    catalog: Optional[CatalogBridge] = None,
    cache: Optional[CacheRegistry] = None,
    logger: Optional[logging.Logger] = None,
) -> ExtractionResult:
    """Compute the lineage record of one resolved plan.

    Errors are returned in ``ExtractionResult.error`` rather than raised;
    operators without a rule are reported in ``ExtractionResult.warnings``.
    """
    bridge = CacheOverlay(cache, catalog) if cache is not None else catalog
    propagator = LineagePropagator(bridge, logger=logger)
    try:
        lineage = TargetBinder(propagator).bind(plan)
    except LineageError as e:
        propagator.logger.debug("Lineage extraction failed for %s: %s", plan.kind, e.message)
        return ExtractionResult.failure(e, propagator.warnings)
    propagator.logger.debug(
        "Extracted %s lineage: %d sources, %d columns", plan.kind, len(lineage.sources), len(lineage.columns)
    )
    return ExtractionResult(lineage, warnings=tuple(propagator.warnings))


class LineageExtractor:
    """SQL-facing facade: plans statements against an in-memory catalog and extracts lineage.

    Responsibilities:
    1. Parse and plan SQL statements using sqlglot (``QueryPlanner``)
    2. Extract lineage of each plan (``extract_lineage``)
    3. Apply DDL / cache side effects so later statements see new tables, views and caches
    """

    def __init__(
        self,
        engine: Optional[str] = None,
        schema: Optional[Dict[str, Any]] = None,
        config: Optional[LineageConfig] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.config = config or LineageConfig.from_env()
        self.engine = (engine or self.config.dialect).lower()
        self.logger = logger or get_logger(level=self.config.log_level)
        self.catalog = InMemoryCatalog(self.config.default_database, self.config.session_catalog)
        apply_schema(self.catalog, schema or {})
        self.planner = QueryPlanner(self.catalog, dialect=self.engine)

    # --------------- public API ---------------
    def plan(self, sql: str) -> PlanNode:
        return self.planner.plan(sql)

    def extract_plan(self, plan: PlanNode) -> ExtractionResult:
        result = extract_lineage(plan, self.catalog)
        for warning in result.warnings:
            self.logger.debug("Fallback used: %s", warning.message)
        return result

    def extract(self, sql: str) -> Lineage:
        """Lineage of a single statement without applying its side effects."""
        return self.extract_plan(self.plan(sql)).unwrap()

    def execute(self, sql: str) -> List[Lineage]:
        """Lineage of every statement in ``sql``, applying DDL and cache statements as they go."""
        return [self._execute_statement(stmt) for stmt in self.planner.parse(sql)]

    def cache_plan(self, plan: PlanNode, label: Optional[str] = None) -> CacheKey:
        return self.catalog.cache.cache_plan(plan, label)

    def iter_file(self, path: str) -> Iterator[Tuple[int, Lineage]]:
        """``(statement number, lineage)`` for each statement of a file; failing statements are logged and skipped."""
        with open(path, "r", encoding="utf-8") as f:
            sql_text = f.read()
        for idx, stmt in enumerate(self.planner.parse(sql_text), start=1):
            try:
                yield idx, self._execute_statement(stmt)
            except LineageError as e:
                self.logger.error(f"Skipping statement {idx} of {path}: {e.message}")

    def extract_from_file(self, path: str) -> List[Lineage]:
        return [lineage for _, lineage in self.iter_file(path)]

    # --------------- internal ---------------
    def _execute_statement(self, stmt: exp.Expression) -> Lineage:
        plan = self.planner.plan(stmt)
        result = self.extract_plan(plan)
        self._apply(stmt, plan)
        return result.unwrap()

    def _apply(self, stmt: exp.Expression, plan: PlanNode) -> None:
        if isinstance(plan, CreateTable):
            self.catalog.register_table(plan.target, plan.columns, plan.partition_columns)
        elif isinstance(plan, CreateTableAsSelect):
            names = plan.column_names or tuple(a.name for a in plan.child.output)
            self.catalog.register_table(plan.target, names)
        elif isinstance(plan, CreateView):
            view = plan.child
            if plan.column_names:
                view = Project(
                    view,
                    tuple(Projection(a.ref(), a.renamed(n)) for a, n in zip(view.output, plan.column_names)),
                )
            self.catalog.register_view(plan.target, view)
        elif isinstance(plan, NoOpCommand) and plan.name is not None:
            if plan.statement == "cache" and isinstance(stmt, exp.Cache):
                defining = self.planner.plan_cached_query(stmt)
                if defining is not None:
                    self.catalog.cache_table(plan.name, defining)
            elif plan.statement == "uncache":
                self.catalog.uncache_table(plan.name)
            elif plan.statement == "drop":
                self.catalog.drop(plan.name)
            else:
                return
        else:
            return
        self.logger.debug(f"Applied {plan.kind} side effects")
