"""Catalog and cache bridge.

The propagator asks :meth:`CatalogBridge.resolve_defining_plan` about every
leaf it meets: a plan comes back for views and cached relations, ``None``
for genuine base tables. :class:`InMemoryCatalog` is the bridge used by the
SQL front-end; hosts with a real metastore can subclass
:class:`CatalogBridge` instead.
"""

from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import Dict, Hashable, Iterable, List, Optional, Sequence, Tuple, Union

from ..errors import UnresolvedPlanError
from ..utils import normalize_identifier, split_identifier
from .plan import DEFAULT_DATABASE, PlanNode, QualifiedName

Identifier = Union[str, Sequence[str], QualifiedName]

logger = logging.getLogger("plan_lineage.catalog")


@dataclass(frozen=True)
class TableDefinition:
    """Base table schema; ``columns`` lists data columns first, partition columns last."""

    name: QualifiedName
    columns: Tuple[str, ...]
    partition_columns: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ViewDefinition:
    name: QualifiedName
    plan: PlanNode

    @property
    def columns(self) -> Tuple[str, ...]:
        return tuple(a.name for a in self.plan.output)


_cache_tokens = itertools.count(1)


@dataclass(frozen=True)
class CacheKey:
    """Instance identity of an anonymously cached plan; unique per ``cache_plan`` call."""

    token: int = field(default_factory=lambda: next(_cache_tokens))
    label: Optional[str] = field(default=None, compare=False)

    def __str__(self) -> str:
        return f"cache#{self.token}" if not self.label else f"cache#{self.token}({self.label})"


class CacheRegistry:
    """Cached relations by registered name or by instance key."""

    def __init__(self) -> None:
        self._entries: Dict[Hashable, PlanNode] = {}

    def register(self, key: Hashable, plan: PlanNode) -> Hashable:
        self._entries[key] = plan
        logger.debug("Cached relation registered under %s", key)
        return key

    def cache_plan(self, plan: PlanNode, label: Optional[str] = None) -> CacheKey:
        return self.register(CacheKey(label=label), plan)

    def lookup(self, key: Hashable) -> Optional[PlanNode]:
        return self._entries.get(key)

    def uncache(self, key: Hashable) -> bool:
        return self._entries.pop(key, None) is not None

    def keys(self) -> List[Hashable]:
        return list(self._entries)


class CatalogBridge:
    """Read-only interface the propagator consumes."""

    def resolve_defining_plan(self, key: Hashable) -> Optional[PlanNode]:
        raise NotImplementedError

    def canonical_name(self, identifier: Identifier) -> QualifiedName:
        raise NotImplementedError


class EmptyBridge(CatalogBridge):
    """Bridge for plans that never reference views or caches."""

    def __init__(self, default_database: str = DEFAULT_DATABASE) -> None:
        self.default_database = default_database

    def resolve_defining_plan(self, key: Hashable) -> Optional[PlanNode]:
        return None

    def canonical_name(self, identifier: Identifier) -> QualifiedName:
        return canonical_name(identifier, self.default_database)


def canonical_name(
    identifier: Identifier,
    default_database: str = DEFAULT_DATABASE,
    session_catalog: Optional[str] = "spark_catalog",
) -> QualifiedName:
    """Case-insensitive canonical form, filling the default database.

    ``t`` -> ``default.t``; ``db.t`` -> ``db.t``; ``cat.db.t`` keeps the
    catalog unless it is the session catalog.
    """
    if isinstance(identifier, QualifiedName):
        if identifier.catalog and identifier.catalog == normalize_identifier(session_catalog):
            return QualifiedName(identifier.table, identifier.database)
        return identifier
    if isinstance(identifier, str):
        parts = split_identifier(identifier)
    else:
        parts = [normalize_identifier(p) for p in identifier if p]
    if not parts:
        raise UnresolvedPlanError("Empty table identifier")
    if len(parts) == 1:
        return QualifiedName(parts[0], default_database)
    if len(parts) == 2:
        return QualifiedName(parts[1], parts[0])
    catalog, database, table = parts[0], ".".join(parts[1:-1]), parts[-1]
    if catalog == normalize_identifier(session_catalog):
        return QualifiedName(table, database)
    return QualifiedName(table, database, catalog)


class InMemoryCatalog(CatalogBridge):
    """Tables, views and cached relations held in process memory."""

    def __init__(
        self,
        default_database: str = DEFAULT_DATABASE,
        session_catalog: str = "spark_catalog",
        cache: Optional[CacheRegistry] = None,
    ) -> None:
        self.default_database = normalize_identifier(default_database) or DEFAULT_DATABASE
        self.session_catalog = normalize_identifier(session_catalog)
        self.cache = cache if cache is not None else CacheRegistry()
        self._tables: Dict[QualifiedName, TableDefinition] = {}
        self._views: Dict[QualifiedName, ViewDefinition] = {}

    def canonical_name(self, identifier: Identifier) -> QualifiedName:
        return canonical_name(identifier, self.default_database, self.session_catalog)

    # --------------- registration ---------------
    def register_table(
        self,
        name: Identifier,
        columns: Iterable[str],
        partition_columns: Iterable[str] = (),
    ) -> TableDefinition:
        qname = self.canonical_name(name)
        parts = tuple(normalize_identifier(c) for c in partition_columns)
        data = tuple(c for c in (normalize_identifier(c) for c in columns) if c not in parts)
        table = TableDefinition(qname, data + parts, parts)
        self._tables[qname] = table
        self._views.pop(qname, None)
        logger.debug("Registered table %s%s", qname, list(table.columns))
        return table

    def register_view(self, name: Identifier, plan: PlanNode) -> ViewDefinition:
        qname = self.canonical_name(name)
        view = ViewDefinition(qname, plan)
        self._views[qname] = view
        logger.debug("Registered view %s%s", qname, list(view.columns))
        return view

    def cache_table(self, name: Identifier, plan: PlanNode) -> QualifiedName:
        return self.cache.register(self.canonical_name(name), plan)

    def uncache_table(self, name: Identifier) -> bool:
        return self.cache.uncache(self.canonical_name(name))

    def drop(self, name: Identifier) -> bool:
        qname = self.canonical_name(name)
        dropped = self._tables.pop(qname, None) is not None
        dropped = self._views.pop(qname, None) is not None or dropped
        return dropped

    # --------------- lookups ---------------
    def table(self, name: Identifier) -> Optional[TableDefinition]:
        return self._tables.get(self.canonical_name(name))

    def view(self, name: Identifier) -> Optional[ViewDefinition]:
        return self._views.get(self.canonical_name(name))

    def tables(self) -> List[TableDefinition]:
        return list(self._tables.values())

    def resolve_defining_plan(self, key: Hashable) -> Optional[PlanNode]:
        if isinstance(key, (str, QualifiedName)):
            key = self.canonical_name(key)
        cached = self.cache.lookup(key)
        if cached is not None:
            return cached
        view = self._views.get(key) if isinstance(key, QualifiedName) else None
        return view.plan if view is not None else None


class CacheOverlay(CatalogBridge):
    """Consult a :class:`CacheRegistry` before delegating to another bridge."""

    def __init__(self, cache: CacheRegistry, bridge: Optional[CatalogBridge] = None) -> None:
        self.cache = cache
        self.bridge = bridge if bridge is not None else EmptyBridge()

    def canonical_name(self, identifier: Identifier) -> QualifiedName:
        return self.bridge.canonical_name(identifier)

    def resolve_defining_plan(self, key: Hashable) -> Optional[PlanNode]:
        if isinstance(key, (str, QualifiedName)):
            key = self.canonical_name(key)
        cached = self.cache.lookup(key)
        if cached is not None:
            return cached
        return self.bridge.resolve_defining_plan(key)
