from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from importledger.db_models import Base


def _timeout_connect_args(database_url: str, statement_timeout_seconds: float | None) -> dict[str, object]:
    connect_args: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        if statement_timeout_seconds:
            # Busy timeout: how long a write waits on a locked database.
            connect_args["timeout"] = statement_timeout_seconds
    elif database_url.startswith("postgresql") and statement_timeout_seconds:
        connect_args["options"] = f"-c statement_timeout={int(statement_timeout_seconds * 1000)}"
    return connect_args


def _enable_sqlite_savepoints(engine: Engine) -> None:
    # pysqlite defers BEGIN on its own, which breaks SAVEPOINT; let SQLAlchemy emit it.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn) -> None:
        conn.exec_driver_sql("BEGIN")


def build_session_factory(
    database_url: str,
    statement_timeout_seconds: float | None = None,
) -> sessionmaker[Session]:
    connect_args = _timeout_connect_args(database_url, statement_timeout_seconds)
    engine = create_engine(database_url, future=True, connect_args=connect_args)
    if engine.dialect.name == "sqlite":
        _enable_sqlite_savepoints(engine)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)
