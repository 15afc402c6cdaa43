"""Pooled data source whose connections travel through an SSH tunnel."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

from .config import DataSourceConfig
from .models import (
    DEFAULT_REMOTE_HOST,
    AuthMethod,
    Credential,
    DatabaseTarget,
    EngineKind,
    ForwardBinding,
    KeyFileAuth,
    PasswordAuth,
    validate_port,
)
from .pool import ConnectionPool, SqlAlchemyConnectionPool
from .ports import DEFAULT_MAX_ATTEMPTS, acquire_free_port
from .tunnels import DEFAULT_SSH_PORT, ForwardingError, ParamikoSshSession, SshSession
from .urls import UnknownEngineError, format_connection_string

LOG = logging.getLogger(__name__)

SessionFactory = Callable[..., SshSession]


class UnsupportedOperationError(RuntimeError):
    """Raised when the connection string is assigned directly."""


class DataSourceClosedError(RuntimeError):
    """Raised when a closed data source is used."""


class TunnelingDataSource:
    """Connection pool whose URL targets a local SSH port forward.

    Build instances with ``open``, ``with_password`` or ``with_key``; the
    constructor only wraps a session that is already authenticated.
    """

    def __init__(
        self,
        session: SshSession,
        pool: ConnectionPool | None = None,
        *,
        logger: logging.Logger | None = None,
        port_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self._session = session
        self._log = logger or LOG
        self._pool = pool if pool is not None else SqlAlchemyConnectionPool(logger=self._log)
        self._port_attempts = port_attempts
        self._remote_host = DEFAULT_REMOTE_HOST
        self._target: DatabaseTarget | None = None
        self._binding: ForwardBinding | None = None
        self._closed = False

    @classmethod
    def open(
        cls,
        credential: str,
        auth: AuthMethod,
        *,
        ssh_port: int = DEFAULT_SSH_PORT,
        pool: ConnectionPool | None = None,
        connect_timeout: float | None = None,
        logger: logging.Logger | None = None,
        session_factory: SessionFactory | None = None,
    ) -> TunnelingDataSource:
        """Parse ``user@host``, open the SSH session and wrap it.

        Raises ``CredentialError`` or ``ValueError`` for bad input before any
        network activity, ``FileNotFoundError`` for a missing key file and
        ``SshSessionError`` when the session cannot be established.
        """

        parsed = Credential.parse(credential, auth)
        validate_port(ssh_port, name="ssh port")
        factory = session_factory or ParamikoSshSession.open
        session = factory(parsed, ssh_port, connect_timeout=connect_timeout, logger=logger)
        return cls(session, pool, logger=logger)

    @classmethod
    def with_password(
        cls,
        credential: str,
        password: str,
        ssh_port: int = DEFAULT_SSH_PORT,
        **kwargs: Any,
    ) -> TunnelingDataSource:
        """Open a data source authenticating with a password."""

        return cls.open(credential, PasswordAuth(password), ssh_port=ssh_port, **kwargs)

    @classmethod
    def with_key(
        cls,
        credential: str,
        key_path: str | Path,
        ssh_port: int = DEFAULT_SSH_PORT,
        *,
        passphrase: str | None = None,
        **kwargs: Any,
    ) -> TunnelingDataSource:
        """Open a data source authenticating with a private key file."""

        return cls.open(credential, KeyFileAuth(Path(key_path), passphrase), ssh_port=ssh_port, **kwargs)

    @property
    def session(self) -> SshSession:
        return self._session

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def remote_host(self) -> str:
        """Database host as seen from the SSH server."""

        return self._remote_host

    @remote_host.setter
    def remote_host(self, host: str) -> None:
        self.set_remote_host(host)

    def set_remote_host(self, host: str) -> None:
        """Use a database host other than the SSH server itself."""

        if not host:
            raise ValueError("remote host must not be empty")
        self._remote_host = host

    @property
    def target(self) -> DatabaseTarget | None:
        return self._target

    @property
    def binding(self) -> ForwardBinding | None:
        return self._binding

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def url(self) -> str | None:
        """Connection string handed to the pool, if configured."""

        return self._pool.url

    @url.setter
    def url(self, value: str) -> None:
        self.set_url(value)

    def set_url(self, url: str) -> None:
        raise UnsupportedOperationError(
            "use TunnelingDataSource.configure_target(engine, remote_port, database) "
            "instead of assigning the URL"
        )

    def configure_target(
        self,
        engine: EngineKind | str,
        remote_port: int,
        database: str | None = None,
    ) -> ForwardBinding:
        """Forward a free local port to the database and point the pool at it."""

        self._ensure_open()
        try:
            kind = EngineKind(engine)
        except ValueError:
            raise UnknownEngineError(f"unknown database type {engine!r}") from None
        validate_port(remote_port, name="database port")
        target = DatabaseTarget(
            engine=kind,
            remote_port=remote_port,
            database=database,
            remote_host=self._remote_host,
        )
        # The previous forward stays live until its replacement is listening.
        local_port = acquire_free_port(max_attempts=self._port_attempts)
        try:
            binding = self._session.forward_local_port(local_port, target.remote_host, remote_port)
        except ForwardingError:
            self._log.error("Error establishing port forwarding", exc_info=True)
            raise
        url = format_connection_string(kind, binding.local_port, database)
        self._pool.set_url(url)
        previous, self._binding = self._binding, binding
        self._target = target
        if previous is not None:
            self._session.close_forward(previous.local_port)
        if kind is EngineKind.MSSQL:
            self._log.warning(
                "%s connection string carries no port; forwarded port %s is not used",
                kind.label,
                binding.local_port,
            )
        self._log.info("%s connection string set to %s", kind.label, url)
        return binding

    def acquire(self) -> Any:
        """Check out a pooled connection."""

        self._ensure_open()
        return self._pool.acquire()

    def release(self, connection: Any) -> None:
        self._ensure_open()
        self._pool.release(connection)

    @contextmanager
    def connection(self) -> Iterator[Any]:
        """Yield a pooled connection, returning it to the pool afterwards."""

        conn = self.acquire()
        try:
            yield conn
        finally:
            self._pool.release(conn)

    def close(self) -> None:
        """Close the pool, then the SSH session."""

        if self._closed:
            return
        self._closed = True
        try:
            self._pool.close()
        except Exception:
            self._log.error("Error closing connection pool", exc_info=True)
            self._session.close()
            raise
        self._session.close()

    def __enter__(self) -> TunnelingDataSource:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _ensure_open(self) -> None:
        if self._closed:
            raise DataSourceClosedError("data source is already closed")


def open_data_source(
    config: DataSourceConfig,
    *,
    logger: logging.Logger | None = None,
    session_factory: SessionFactory | None = None,
) -> TunnelingDataSource:
    """Open a data source and configure its target from a loaded config."""

    ssh = config.ssh
    source = TunnelingDataSource.open(
        ssh.destination,
        ssh.auth(),
        ssh_port=ssh.port,
        pool=SqlAlchemyConnectionPool(config.pool.to_settings(), logger=logger),
        connect_timeout=ssh.connect_timeout,
        logger=logger,
        session_factory=session_factory,
    )
    try:
        source.set_remote_host(config.target.remote_host)
        source.configure_target(config.target.engine, config.target.port, config.target.database)
    except Exception:
        source.close()
        raise
    return source


__all__ = [
    "DataSourceClosedError",
    "TunnelingDataSource",
    "UnsupportedOperationError",
    "open_data_source",
]
