"""
app/repositories package marker.
"""

from app.repositories.base import MappingStore, RowStore, VariableIndexCache
from app.repositories.memory_store import (
    InMemoryMappingStore,
    InMemorySurveyStore,
    InMemoryVariableIndexCache,
)
from app.repositories.sqlalchemy_store import (
    SqlAlchemyMappingStore,
    SqlAlchemySurveyStore,
    SqlAlchemyVariableIndexCache,
)

__all__ = [
    "InMemoryMappingStore",
    "InMemorySurveyStore",
    "InMemoryVariableIndexCache",
    "MappingStore",
    "RowStore",
    "SqlAlchemyMappingStore",
    "SqlAlchemySurveyStore",
    "SqlAlchemyVariableIndexCache",
    "VariableIndexCache",
]
