from sqlalchemy import create_engine, inspect
from sqlalchemy.orm import sessionmaker, Session, DeclarativeBase

from .settings import settings

class Base(DeclarativeBase):
    pass

_engine = None
_SessionLocal = None

def init_db(url: str | None = None) -> None:
    """Create the engine and session factory. Does not touch the schema."""
    global _engine, _SessionLocal
    if _engine is not None:
        return
    url = url or settings.KR_DB_URL
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    _engine = create_engine(url, future=True, echo=False, connect_args=connect_args, pool_pre_ping=True)
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False, autocommit=False, future=True)

def reset_db() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None

def get_engine():
    if _engine is None:
        init_db()
    return _engine

def create_schema() -> None:
    """Explicit migration step; run once per deployment (`korpri-run migrate`)."""
    from . import models  # noqa
    Base.metadata.create_all(bind=get_engine())

def schema_exists() -> bool:
    from . import models  # noqa
    existing = set(inspect(get_engine()).get_table_names())
    return set(Base.metadata.tables).issubset(existing)

def new_session() -> Session:
    if _SessionLocal is None:
        init_db()
    return _SessionLocal()

def get_session() -> Session:
    db = new_session()
    try:
        yield db
    finally:
        db.close()
