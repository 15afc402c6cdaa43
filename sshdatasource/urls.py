"""Connection strings for tunnelled databases."""

from __future__ import annotations

from typing import Callable, Mapping

from sqlalchemy.engine import URL, make_url

from .models import EngineKind

LOCAL_HOST = "localhost"

ConnectionStringFormatter = Callable[[int, str], str]


class UnknownEngineError(ValueError):
    """Raised when no connection string format exists for an engine."""


def _mysql(port: int, database: str) -> str:
    return f"mysql://{LOCAL_HOST}:{port}/{database}"


def _mssql(port: int, database: str) -> str:
    # The port is not part of the SQL Server string; the driver default applies.
    return f"sqlserver://{LOCAL_HOST}/{database}"


def _oracle(port: int, database: str) -> str:
    return f"oracle:{port}:{database}"


def _postgresql(port: int, database: str) -> str:
    return f"postgresql://{LOCAL_HOST}:{port}/{database}"


_FORMATTERS: Mapping[EngineKind, ConnectionStringFormatter] = {
    EngineKind.MYSQL: _mysql,
    EngineKind.MSSQL: _mssql,
    EngineKind.ORACLE: _oracle,
    EngineKind.POSTGRESQL: _postgresql,
}

_SCHEMES: Mapping[str, EngineKind] = {
    "mysql": EngineKind.MYSQL,
    "sqlserver": EngineKind.MSSQL,
    "oracle": EngineKind.ORACLE,
    "postgresql": EngineKind.POSTGRESQL,
}

DEFAULT_DRIVERS: Mapping[EngineKind, str] = {
    EngineKind.MYSQL: "pymysql",
    EngineKind.MSSQL: "pymssql",
    EngineKind.ORACLE: "oracledb",
    EngineKind.POSTGRESQL: "psycopg2",
}

_DIALECTS: Mapping[EngineKind, str] = {
    EngineKind.MYSQL: "mysql",
    EngineKind.MSSQL: "mssql",
    EngineKind.ORACLE: "oracle",
    EngineKind.POSTGRESQL: "postgresql",
}


def format_connection_string(engine: EngineKind, port: int, database: str | None = None) -> str:
    """Build the connection string pointing at a local forwarded port."""

    try:
        formatter = _FORMATTERS[engine]
    except KeyError:
        raise UnknownEngineError(f"unknown database type {engine!r}") from None
    return formatter(port, database or "")


def engine_for(connection_string: str) -> EngineKind:
    """Return the engine a connection string was formatted for."""

    scheme = connection_string.split(":", 1)[0]
    try:
        return _SCHEMES[scheme]
    except KeyError:
        raise UnknownEngineError(f"unrecognised connection string {connection_string!r}") from None


def to_sqlalchemy_url(
    connection_string: str,
    *,
    username: str | None = None,
    password: str | None = None,
    drivers: Mapping[EngineKind, str] | None = None,
) -> URL:
    """Translate a connection string into a SQLAlchemy URL."""

    engine = engine_for(connection_string)
    driver = {**DEFAULT_DRIVERS, **(drivers or {})}[engine]
    drivername = f"{_DIALECTS[engine]}+{driver}" if driver else _DIALECTS[engine]
    if engine is EngineKind.ORACLE:
        _, port, database = connection_string.split(":", 2)
        url = URL.create(drivername, host=LOCAL_HOST, port=int(port), database=database or None)
    else:
        parsed = make_url(connection_string)
        url = URL.create(drivername, host=parsed.host, port=parsed.port, database=parsed.database or None)
    if username is not None:
        url = url.set(username=username)
    if password is not None:
        url = url.set(password=password)
    return url


__all__ = [
    "DEFAULT_DRIVERS",
    "LOCAL_HOST",
    "UnknownEngineError",
    "engine_for",
    "format_connection_string",
    "to_sqlalchemy_url",
]
