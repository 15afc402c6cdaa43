"""Data source configuration loading helpers."""

from __future__ import annotations

import logging
from pathlib import Path

import tomllib

from pydantic import BaseModel, Field, model_validator

from .models import DEFAULT_REMOTE_HOST, AuthMethod, EngineKind, KeyFileAuth, PasswordAuth
from .pool import PoolSettings

LOG = logging.getLogger(__name__)

CONFIG_FILE = Path.home() / ".config" / "sshdatasource" / "config.toml"


class SshConfig(BaseModel):
    """How to reach the SSH server."""

    destination: str
    port: int = Field(default=22, ge=1, le=65535)
    password: str | None = None
    key_file: Path | None = None
    passphrase: str | None = None
    connect_timeout: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _single_auth_method(self) -> SshConfig:
        if (self.password is None) == (self.key_file is None):
            raise ValueError("set exactly one of 'password' or 'key_file'")
        return self

    def auth(self) -> AuthMethod:
        if self.key_file is not None:
            return KeyFileAuth(self.key_file, self.passphrase)
        return PasswordAuth(self.password or "")


class TargetConfig(BaseModel):
    """Database reached through the tunnel."""

    engine: EngineKind
    port: int = Field(ge=1, le=65535)
    database: str | None = None
    remote_host: str = DEFAULT_REMOTE_HOST


class PoolConfig(BaseModel):
    """Pool sizing and database credentials."""

    username: str | None = None
    password: str | None = None
    pool_size: int = Field(default=5, ge=1)
    max_overflow: int = Field(default=10, ge=0)
    timeout: float = Field(default=30.0, gt=0)
    recycle: int = -1
    pre_ping: bool = True
    drivers: dict[EngineKind, str] = Field(default_factory=dict)

    def to_settings(self) -> PoolSettings:
        return PoolSettings(
            username=self.username,
            password=self.password,
            pool_size=self.pool_size,
            max_overflow=self.max_overflow,
            timeout=self.timeout,
            recycle=self.recycle,
            pre_ping=self.pre_ping,
            drivers=dict(self.drivers),
        )


class DataSourceConfig(BaseModel):
    """Shape of the configuration file."""

    ssh: SshConfig
    target: TargetConfig
    pool: PoolConfig = Field(default_factory=PoolConfig)


def load_config(path: Path | None = None) -> DataSourceConfig | None:
    """Load configuration from disk; ``None`` when it is missing or unreadable."""

    config_path = path or CONFIG_FILE
    try:
        with config_path.open("rb") as handle:
            raw = tomllib.load(handle)
    except FileNotFoundError:
        return None
    except (tomllib.TOMLDecodeError, OSError) as exc:
        LOG.warning("Ignoring unreadable config %s: %s", config_path, exc)
        return None
    return DataSourceConfig.model_validate(raw)


def save_config(config: DataSourceConfig, path: Path | None = None) -> None:
    """Persist configuration to disk."""

    config_path = path or CONFIG_FILE
    config_path.parent.mkdir(parents=True, exist_ok=True)
    ssh, target, pool = config.ssh, config.target, config.pool
    lines: list[str] = [
        "[ssh]",
        f'destination = "{ssh.destination}"',
        f"port = {ssh.port}",
    ]
    if ssh.key_file is not None:
        lines.append(f'key_file = "{ssh.key_file}"')
    if ssh.password is not None:
        lines.append(f'password = "{ssh.password}"')
    if ssh.passphrase is not None:
        lines.append(f'passphrase = "{ssh.passphrase}"')
    if ssh.connect_timeout is not None:
        lines.append(f"connect_timeout = {ssh.connect_timeout}")
    lines.extend(
        [
            "",
            "[target]",
            f'engine = "{target.engine.value}"',
            f'remote_host = "{target.remote_host}"',
            f"port = {target.port}",
        ]
    )
    if target.database:
        lines.append(f'database = "{target.database}"')
    lines.extend(["", "[pool]"])
    if pool.username:
        lines.append(f'username = "{pool.username}"')
    if pool.password:
        lines.append(f'password = "{pool.password}"')
    lines.extend(
        [
            f"pool_size = {pool.pool_size}",
            f"max_overflow = {pool.max_overflow}",
            f"timeout = {pool.timeout}",
            f"recycle = {pool.recycle}",
            f"pre_ping = {str(pool.pre_ping).lower()}",
        ]
    )
    if pool.drivers:
        lines.append("")
        lines.append("[pool.drivers]")
        for engine in sorted(pool.drivers, key=lambda kind: kind.value):
            lines.append(f'{engine.value} = "{pool.drivers[engine]}"')
    config_path.write_text("\n".join(lines) + "\n")


__all__ = [
    "CONFIG_FILE",
    "DataSourceConfig",
    "PoolConfig",
    "SshConfig",
    "TargetConfig",
    "load_config",
    "save_config",
]
