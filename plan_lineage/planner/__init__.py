from .query import SelectPlanner
from .scope import Scope, Source
from .statements import QueryPlanner

__all__ = ["QueryPlanner", "SelectPlanner", "Scope", "Source"]
