from app.core.config import settings
from app.core.database import Base, get_db, engine, SessionLocal
from app.core.timeutils import utcnow

__all__ = ["settings", "Base", "get_db", "engine", "SessionLocal", "utcnow"]
