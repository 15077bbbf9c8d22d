"""Engine registry — job type to engine definition lookup."""
from .engines import EngineDefinition, EngineNotFound, EngineRegistry, ExecutionError, http_engine

__all__ = ["EngineDefinition", "EngineNotFound", "EngineRegistry", "ExecutionError", "http_engine"]
