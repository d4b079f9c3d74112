"""SQLite transaction settings needed for SAVEPOINT support."""

from sqlalchemy import event
from sqlalchemy.engine import Engine


def enable_sqlite_savepoints(engine: Engine) -> Engine:
    """Let SQLAlchemy, not pysqlite, emit BEGIN so nested transactions behave."""

    @event.listens_for(engine, "connect")
    def _disable_pysqlite_transactions(dbapi_connection, _connection_record) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(connection) -> None:
        connection.exec_driver_sql("BEGIN")

    return engine
