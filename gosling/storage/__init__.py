from gosling.storage.database import Database
from gosling.storage.models import Base, SessionRecord
from gosling.storage.store import SessionStore, SessionSummary

__all__ = ["Base", "Database", "SessionRecord", "SessionStore", "SessionSummary"]
