from sqlalchemy import create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import settings

_url = make_url(settings.DATABASE_URL)
_backend = _url.get_backend_name()

connect_args = {}
engine_kwargs = {"pool_pre_ping": True}
if _backend.startswith("postgresql"):
    connect_args["options"] = "-c timezone=utc"
elif _backend == "sqlite":
    connect_args["check_same_thread"] = False
    if _url.database in (None, "", ":memory:"):
        # Single shared connection so every session sees the same in-memory DB
        engine_kwargs["poolclass"] = StaticPool

engine = create_engine(
    settings.DATABASE_URL, connect_args=connect_args, **engine_kwargs
)

if _backend == "sqlite":
    # pysqlite's implicit transaction handling breaks SAVEPOINT; take over BEGIN.

    @event.listens_for(engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA foreign_keys=ON")

    @event.listens_for(engine, "begin")
    def _sqlite_begin(conn):
        conn.exec_driver_sql("BEGIN")


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
