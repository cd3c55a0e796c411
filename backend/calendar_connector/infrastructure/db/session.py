from collections.abc import Generator
from time import perf_counter

from sqlalchemy import create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from calendar_connector.core.config import settings
from calendar_connector.infrastructure.observability.metrics import observe_db_query


def _engine_options(database_uri: str) -> dict:
    url = make_url(database_uri)
    if url.get_backend_name() != "sqlite":
        return {"pool_pre_ping": True}
    options: dict = {"connect_args": {"check_same_thread": False}}
    if url.database in (None, "", ":memory:"):
        # Every connection to an in-memory database is a new, empty database.
        options["poolclass"] = StaticPool
    return options


engine = create_engine(settings.sqlalchemy_database_uri, **_engine_options(settings.sqlalchemy_database_uri))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


@event.listens_for(engine, "before_cursor_execute")
def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    conn.info.setdefault("query_started_at_stack", []).append(perf_counter())


@event.listens_for(engine, "after_cursor_execute")
def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    stack = conn.info.get("query_started_at_stack", [])
    if not stack:
        return
    parts = statement.split(None, 1)
    observe_db_query(perf_counter() - stack.pop(-1), operation=parts[0].lower() if parts else "sql")


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
