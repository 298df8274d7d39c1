from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from dispatch.core_settings import get_settings
from dispatch.domain.models import Base

settings = get_settings()
DATABASE_URL = settings.database_url

def build_engine(url: str, immediate: bool = False):
    """Engine for ``url``. On SQLite, ``immediate`` takes the write lock at
    BEGIN so concurrent writers wait for each other instead of failing."""
    if not url.startswith("sqlite"):
        return create_engine(url, echo=False, future=True, pool_pre_ping=True)
    # request handlers run on the threadpool
    engine = create_engine(url, echo=False, future=True, connect_args={"check_same_thread": False})

    # let SQLAlchemy own BEGIN so SAVEPOINTs behave under pysqlite
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE" if immediate else "BEGIN")

    return engine

engine = build_engine(DATABASE_URL)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)

def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def init_models(bind=None):
    Base.metadata.create_all(bind or engine)
