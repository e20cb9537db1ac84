"""
Lineage exception hierarchy.

Hierarchy::

    LineageError
    ├── UnresolvedPlanError       - unresolved references, unknown tables, arity mismatches
    ├── CyclicDefinitionError     - view/cache self reference detected while inlining
    ├── UnsupportedOperatorError  - operator kind without a propagation rule
    └── PlanningError             - SQL construct the planner cannot model
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Sequence


class LineageError(Exception):
    """Base exception for all lineage errors."""

    def __init__(self, message: str, *, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class UnresolvedPlanError(LineageError):
    """Raised when a plan still contains references that do not resolve."""


class CyclicDefinitionError(LineageError):
    """Raised when a view or cached relation is re-entered while it is being inlined."""

    def __init__(self, key: Any, stack: Sequence[Any]) -> None:
        path = " -> ".join(str(k) for k in [*stack, key])
        super().__init__(
            f"Cyclic definition while inlining {key}: {path}",
            details={"key": key, "stack": list(stack)},
        )
        self.key = key


class UnsupportedOperatorError(LineageError):
    """Operator kind with no propagation rule.

    The propagator never raises this; it records one per fallback in
    ``ExtractionResult.warnings``.
    """

    def __init__(self, kind: str) -> None:
        super().__init__(f"No lineage rule for operator '{kind}'", details={"kind": kind})
        self.kind = kind


class PlanningError(LineageError):
    """Raised by the SQL planner for constructs it cannot turn into a plan."""
