from .base import RunStore
from .memory import MemoryRunStore
from .sql import SqlRunStore, create_store_engine

__all__ = ["RunStore", "MemoryRunStore", "SqlRunStore", "create_store_engine"]
