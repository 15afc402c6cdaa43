"""Connection pools fed with tunnelled connection strings."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol, runtime_checkable

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from .models import EngineKind
from .urls import to_sqlalchemy_url

LOG = logging.getLogger(__name__)


class PoolError(RuntimeError):
    """Raised when the pool cannot hand out a connection."""


@runtime_checkable
class ConnectionPool(Protocol):
    """Protocol implemented by pools the data source delegates to."""

    @property
    def url(self) -> str | None:
        """Connection string currently configured, if any."""

    def set_url(self, url: str) -> None:
        """Point the pool at a new connection string."""

    def acquire(self) -> Any:
        """Check out a DB-API connection."""

    def release(self, connection: Any) -> None:
        """Return a connection obtained from ``acquire``."""

    def close(self) -> None:
        """Dispose of every pooled connection."""


@dataclass(frozen=True, slots=True)
class PoolSettings:
    """Sizing and credentials for the underlying SQLAlchemy pool."""

    username: str | None = None
    password: str | None = None
    pool_size: int = 5
    max_overflow: int = 10
    timeout: float = 30.0
    recycle: int = -1
    pre_ping: bool = True
    drivers: Mapping[EngineKind, str] = field(default_factory=dict)
    connect_args: Mapping[str, Any] = field(default_factory=dict)


class SqlAlchemyConnectionPool:
    """Queue pool built lazily from the configured connection string."""

    def __init__(self, settings: PoolSettings | None = None, *, logger: logging.Logger | None = None) -> None:
        self._settings = settings or PoolSettings()
        self._log = logger or LOG
        self._url: str | None = None
        self._engine: Engine | None = None

    @property
    def url(self) -> str | None:
        return self._url

    @property
    def settings(self) -> PoolSettings:
        return self._settings

    def set_url(self, url: str) -> None:
        if self._engine is not None:
            self._dispose()
        self._url = url

    def acquire(self) -> Any:
        engine = self._engine or self._build_engine()
        try:
            return engine.raw_connection()
        except SQLAlchemyError as exc:
            raise PoolError(f"Cannot get a connection from {self._url}: {exc}") from exc

    def release(self, connection: Any) -> None:
        connection.close()

    def close(self) -> None:
        if self._engine is not None:
            self._dispose()

    def _build_engine(self) -> Engine:
        if not self._url:
            raise PoolError("no URL configured")
        settings = self._settings
        url = to_sqlalchemy_url(
            self._url,
            username=settings.username,
            password=settings.password,
            drivers=settings.drivers,
        )
        try:
            engine = create_engine(
                url,
                pool_size=settings.pool_size,
                max_overflow=settings.max_overflow,
                pool_timeout=settings.timeout,
                pool_recycle=settings.recycle,
                pool_pre_ping=settings.pre_ping,
                connect_args=dict(settings.connect_args),
            )
        except (SQLAlchemyError, ImportError) as exc:
            raise PoolError(f"Cannot create engine for {self._url}: {exc}") from exc
        self._log.debug("created engine for %s", url.render_as_string(hide_password=True))
        self._engine = engine
        return engine

    def _dispose(self) -> None:
        engine, self._engine = self._engine, None
        if engine is not None:
            engine.dispose()


__all__ = ["ConnectionPool", "PoolError", "PoolSettings", "SqlAlchemyConnectionPool"]
