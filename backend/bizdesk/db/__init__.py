"""Database package."""

from bizdesk.db.base import Base, BaseModel
from bizdesk.db.session import DBSession, async_session_factory, get_db_session

__all__ = ["Base", "BaseModel", "DBSession", "async_session_factory", "get_db_session"]
