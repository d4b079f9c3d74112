"""Engine and session factory."""

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from salesrecon.config import get_settings
from salesrecon.db.sqlite import enable_sqlite_savepoints

_settings = get_settings()

engine = create_engine(_settings.database_url, future=True, pool_pre_ping=True)
if engine.dialect.name == "sqlite":
    enable_sqlite_savepoints(engine)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
