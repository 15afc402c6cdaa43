"""Shared dataclasses describing credentials, targets and forwards."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

DEFAULT_REMOTE_HOST = "localhost"


class CredentialError(ValueError):
    """Raised when an SSH credential string is malformed."""


class EngineKind(str, Enum):
    """Supported database engines."""

    MYSQL = "mysql"
    MSSQL = "mssql"
    ORACLE = "oracle"
    POSTGRESQL = "postgresql"

    @property
    def label(self) -> str:
        return _ENGINE_LABELS[self]


_ENGINE_LABELS = {
    EngineKind.MYSQL: "MySql",
    EngineKind.MSSQL: "MsSql",
    EngineKind.ORACLE: "Oracle",
    EngineKind.POSTGRESQL: "PostgreSql",
}


@dataclass(frozen=True, slots=True)
class PasswordAuth:
    """Authenticate the SSH session with a password."""

    password: str

    def __repr__(self) -> str:
        return "PasswordAuth(password='***')"


@dataclass(frozen=True, slots=True)
class KeyFileAuth:
    """Authenticate the SSH session with a private key file."""

    path: Path
    passphrase: str | None = None

    def resolve(self) -> Path:
        """Return the expanded key path, failing if it does not point at a file."""

        key_path = Path(self.path).expanduser()
        if not key_path.is_file():
            raise FileNotFoundError(f"SSH key file not found: {key_path}")
        return key_path


AuthMethod = PasswordAuth | KeyFileAuth


@dataclass(frozen=True, slots=True)
class Credential:
    """SSH login split out of a ``user@host`` string."""

    username: str
    host: str
    auth: AuthMethod

    @classmethod
    def parse(cls, value: str, auth: AuthMethod) -> Credential:
        parts = value.split("@")
        if len(parts) != 2 or not all(parts):
            raise CredentialError(f"SSH user must be of the form user@host, got {value!r}")
        username, host = parts
        return cls(username=username, host=host, auth=auth)

    def __str__(self) -> str:
        return f"{self.username}@{self.host}"


@dataclass(frozen=True, slots=True)
class DatabaseTarget:
    """Database reachable from the SSH server's network."""

    engine: EngineKind
    remote_port: int
    database: str | None = None
    remote_host: str = DEFAULT_REMOTE_HOST


@dataclass(frozen=True, slots=True)
class ForwardBinding:
    """A live local port forward through the SSH session."""

    local_port: int
    remote_host: str
    remote_port: int

    def __str__(self) -> str:
        return f"localhost:{self.local_port} -> {self.remote_host}:{self.remote_port}"


def validate_port(port: int, *, name: str = "port") -> int:
    """Ensure ``port`` is a usable TCP port number."""

    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        raise ValueError(f"invalid {name} {port!r}; expected 1-65535")
    return port


__all__ = [
    "AuthMethod",
    "Credential",
    "CredentialError",
    "DEFAULT_REMOTE_HOST",
    "DatabaseTarget",
    "EngineKind",
    "ForwardBinding",
    "KeyFileAuth",
    "PasswordAuth",
    "validate_port",
]
