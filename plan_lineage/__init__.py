from .config import LineageConfig, load_schema_csv, load_schema_file
from .errors import CyclicDefinitionError, LineageError, PlanningError, UnresolvedPlanError, UnsupportedOperatorError
from .extractor import LineageExtractor, extract_lineage
from .models import ExtractionResult, Lineage

__all__ = [
    "CyclicDefinitionError",
    "ExtractionResult",
    "Lineage",
    "LineageConfig",
    "LineageError",
    "LineageExtractor",
    "PlanningError",
    "UnresolvedPlanError",
    "UnsupportedOperatorError",
    "extract_lineage",
    "load_schema_csv",
    "load_schema_file",
]
