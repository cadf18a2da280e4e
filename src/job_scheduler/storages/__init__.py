from .protocol import JobStore
from .sqlalchemy import SqlAlchemyJobStore, InMemoryJobStore

__all__ = ["JobStore", "SqlAlchemyJobStore", "InMemoryJobStore"]
