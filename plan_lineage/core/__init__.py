from .attributes import ColumnIdAllocator, LineageScope, default_allocator, identity_of
from .binder import TargetBinder
from .catalog import CacheKey, CacheOverlay, CacheRegistry, CatalogBridge, EmptyBridge, InMemoryCatalog, canonical_name
from .propagator import LineagePropagator, NodeLineage

__all__ = [
    "CacheKey",
    "CacheOverlay",
    "CacheRegistry",
    "CatalogBridge",
    "ColumnIdAllocator",
    "EmptyBridge",
    "InMemoryCatalog",
    "LineagePropagator",
    "LineageScope",
    "NodeLineage",
    "TargetBinder",
    "canonical_name",
    "default_allocator",
    "identity_of",
]
