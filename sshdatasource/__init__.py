"""Database connection pools tunnelled through SSH."""

from __future__ import annotations

__version__ = "0.1.0"

from .config import DataSourceConfig, load_config
from .datasource import (
    DataSourceClosedError,
    TunnelingDataSource,
    UnsupportedOperationError,
    open_data_source,
)
from .models import (
    Credential,
    CredentialError,
    DatabaseTarget,
    EngineKind,
    ForwardBinding,
    KeyFileAuth,
    PasswordAuth,
)
from .pool import PoolError, PoolSettings, SqlAlchemyConnectionPool
from .ports import PortExhaustionError, acquire_free_port
from .tunnels import ForwardingError, ParamikoSshSession, SshSessionError
from .urls import UnknownEngineError, format_connection_string

__all__ = [
    "Credential",
    "CredentialError",
    "DataSourceClosedError",
    "DataSourceConfig",
    "DatabaseTarget",
    "EngineKind",
    "ForwardBinding",
    "ForwardingError",
    "KeyFileAuth",
    "ParamikoSshSession",
    "PasswordAuth",
    "PoolError",
    "PoolSettings",
    "PortExhaustionError",
    "SqlAlchemyConnectionPool",
    "SshSessionError",
    "TunnelingDataSource",
    "UnknownEngineError",
    "UnsupportedOperationError",
    "__version__",
    "acquire_free_port",
    "format_connection_string",
    "load_config",
    "open_data_source",
]
