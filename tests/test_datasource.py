"""Tests for the tunnelling data source."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import pytest

from sshdatasource.config import DataSourceConfig
from sshdatasource.datasource import (
    DataSourceClosedError,
    TunnelingDataSource,
    UnsupportedOperationError,
    open_data_source,
)
from sshdatasource.models import (
    Credential,
    CredentialError,
    EngineKind,
    ForwardBinding,
    KeyFileAuth,
    PasswordAuth,
)
from sshdatasource.pool import PoolError
from sshdatasource.ports import PortExhaustionError
from sshdatasource.tunnels import ForwardingError, SshSessionError
from sshdatasource.urls import UnknownEngineError


class _FakeSession:
    def __init__(self, *, fail_forward: bool = False) -> None:
        self.fail_forward = fail_forward
        self.forwards: dict[int, ForwardBinding] = {}
        self.closed_forwards: list[int] = []
        self.closed = False

    @property
    def is_active(self) -> bool:
        return not self.closed

    def forward_local_port(self, local_port: int, remote_host: str, remote_port: int) -> ForwardBinding:
        if self.fail_forward:
            raise ForwardingError("remote refused")
        binding = ForwardBinding(local_port, remote_host, remote_port)
        self.forwards[local_port] = binding
        return binding

    def close_forward(self, local_port: int) -> None:
        self.forwards.pop(local_port, None)
        self.closed_forwards.append(local_port)

    def close(self) -> None:
        self.closed = True


class _FakePool:
    def __init__(self, *, close_error: Exception | None = None) -> None:
        self.url: str | None = None
        self.close_error = close_error
        self.closed = False
        self.released: list[Any] = []

    def set_url(self, url: str) -> None:
        self.url = url

    def acquire(self) -> Any:
        if self.url is None:
            raise PoolError("no URL configured")
        return object()

    def release(self, connection: Any) -> None:
        self.released.append(connection)

    def close(self) -> None:
        self.closed = True
        if self.close_error is not None:
            raise self.close_error


@pytest.fixture
def fixed_port(monkeypatch: pytest.MonkeyPatch) -> int:
    monkeypatch.setattr("sshdatasource.datasource.acquire_free_port", lambda **kwargs: 41000)
    return 41000


def _source(session: _FakeSession | None = None, pool: _FakePool | None = None) -> TunnelingDataSource:
    return TunnelingDataSource(session or _FakeSession(), pool or _FakePool())


def test_configure_target_builds_mysql_url(fixed_port: int) -> None:
    session = _FakeSession()
    source = _source(session)

    binding = source.configure_target(EngineKind.MYSQL, 3306, "app")

    assert source.url == f"mysql://localhost:{fixed_port}/app"
    assert binding == ForwardBinding(fixed_port, "localhost", 3306)
    assert session.forwards[fixed_port].remote_port == 3306
    assert source.target is not None and source.target.database == "app"


def test_configure_target_uses_real_free_port() -> None:
    source = _source()

    binding = source.configure_target(EngineKind.POSTGRESQL, 5432, "app")

    assert 1024 <= binding.local_port < 65535
    assert source.url == f"postgresql://localhost:{binding.local_port}/app"


def test_configure_target_accepts_engine_names(fixed_port: int, caplog: pytest.LogCaptureFixture) -> None:
    source = _source()

    with caplog.at_level(logging.WARNING):
        source.configure_target("mssql", 1433, "app")

    assert source.url == "sqlserver://localhost/app"
    assert f"forwarded port {fixed_port} is not used" in caplog.text


def test_missing_database_leaves_empty_segment(fixed_port: int) -> None:
    source = _source()

    source.configure_target(EngineKind.POSTGRESQL, 5432, None)

    assert source.url == f"postgresql://localhost:{fixed_port}/"


def test_remote_host_is_used_for_forward(fixed_port: int) -> None:
    session = _FakeSession()
    source = _source(session)
    assert source.remote_host == "localhost"

    source.set_remote_host("db.internal")
    source.configure_target(EngineKind.ORACLE, 1521, "orcl")

    assert session.forwards[fixed_port].remote_host == "db.internal"
    assert source.url == f"oracle:{fixed_port}:orcl"


def test_empty_remote_host_is_rejected() -> None:
    with pytest.raises(ValueError):
        _source().set_remote_host("")


def test_reconfiguring_releases_previous_forward(monkeypatch: pytest.MonkeyPatch) -> None:
    chosen = iter([41000, 41001])
    monkeypatch.setattr("sshdatasource.datasource.acquire_free_port", lambda **kwargs: next(chosen))
    session = _FakeSession()
    source = _source(session)

    source.configure_target(EngineKind.MYSQL, 3306, "app")
    source.configure_target(EngineKind.MYSQL, 3306, "reporting")

    assert session.closed_forwards == [41000]
    assert list(session.forwards) == [41001]
    assert source.url == "mysql://localhost:41001/reporting"


def test_failed_reconfigure_keeps_previous_forward(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("sshdatasource.datasource.acquire_free_port", lambda **kwargs: 41000)
    session = _FakeSession()
    pool = _FakePool()
    source = _source(session, pool)
    binding = source.configure_target(EngineKind.MYSQL, 3306, "app")
    target = source.target

    session.fail_forward = True
    with pytest.raises(ForwardingError):
        source.configure_target(EngineKind.MYSQL, 3306, "reporting")

    assert session.closed_forwards == []
    assert session.forwards == {41000: binding}
    assert pool.url == "mysql://localhost:41000/app"
    assert source.binding == binding
    assert source.target == target


def test_port_exhaustion_on_reconfigure_keeps_previous_forward(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("sshdatasource.datasource.acquire_free_port", lambda **kwargs: 41000)
    session = _FakeSession()
    source = _source(session)
    binding = source.configure_target(EngineKind.POSTGRESQL, 5432, "app")

    def _exhausted(**kwargs: Any) -> int:
        raise PortExhaustionError("no free port")

    monkeypatch.setattr("sshdatasource.datasource.acquire_free_port", _exhausted)
    with pytest.raises(PortExhaustionError):
        source.configure_target(EngineKind.POSTGRESQL, 5432, "reporting")

    assert session.forwards == {41000: binding}
    assert source.binding == binding
    assert source.url == "postgresql://localhost:41000/app"


def test_forward_failure_is_logged_and_raised(fixed_port: int, caplog: pytest.LogCaptureFixture) -> None:
    pool = _FakePool()
    source = _source(_FakeSession(fail_forward=True), pool)

    with caplog.at_level(logging.ERROR), pytest.raises(ForwardingError):
        source.configure_target(EngineKind.MYSQL, 3306, "app")

    assert pool.url is None
    assert source.binding is None
    assert "Error establishing port forwarding" in caplog.text
    with pytest.raises(PoolError):
        source.acquire()


def test_invalid_database_port_is_rejected(fixed_port: int) -> None:
    with pytest.raises(ValueError):
        _source().configure_target(EngineKind.MYSQL, 0, "app")


def test_direct_url_assignment_is_rejected() -> None:
    source = _source()

    with pytest.raises(UnsupportedOperationError, match="configure_target"):
        source.set_url("mysql://elsewhere/app")
    with pytest.raises(UnsupportedOperationError):
        source.url = "mysql://elsewhere/app"
    source.close()
    with pytest.raises(UnsupportedOperationError):
        source.set_url("mysql://elsewhere/app")


def test_connection_context_releases(fixed_port: int) -> None:
    pool = _FakePool()
    source = _source(pool=pool)
    source.configure_target(EngineKind.MYSQL, 3306, "app")

    with source.connection() as conn:
        assert conn is not None

    assert pool.released == [conn]


def test_close_closes_pool_then_session() -> None:
    session = _FakeSession()
    pool = _FakePool()
    source = _source(session, pool)

    source.close()
    source.close()

    assert pool.closed and session.closed
    assert source.closed


def test_close_still_closes_session_when_pool_fails() -> None:
    session = _FakeSession()
    source = _source(session, _FakePool(close_error=RuntimeError("pool broke")))

    with pytest.raises(RuntimeError, match="pool broke"):
        source.close()

    assert session.closed


def test_operations_after_close_fail(fixed_port: int) -> None:
    source = _source()
    source.close()

    with pytest.raises(DataSourceClosedError):
        source.configure_target(EngineKind.MYSQL, 3306, "app")
    with pytest.raises(DataSourceClosedError):
        source.acquire()
    with pytest.raises(DataSourceClosedError):
        source.release(object())


def test_context_manager_closes() -> None:
    session = _FakeSession()

    with _source(session) as source:
        assert not source.closed

    assert session.closed


def _recording_factory(calls: list[tuple[Credential, int, dict[str, Any]]], session: _FakeSession):
    def _factory(credential: Credential, port: int, **kwargs: Any) -> _FakeSession:
        calls.append((credential, port, kwargs))
        return session

    return _factory


def test_open_parses_credential_and_opens_session() -> None:
    calls: list[tuple[Credential, int, dict[str, Any]]] = []
    session = _FakeSession()
    logger = logging.getLogger("test.datasource")

    source = TunnelingDataSource.with_password(
        "deploy@bastion",
        "hunter2",
        2222,
        pool=_FakePool(),
        logger=logger,
        session_factory=_recording_factory(calls, session),
    )

    credential, port, kwargs = calls[0]
    assert credential.username == "deploy"
    assert credential.host == "bastion"
    assert credential.auth == PasswordAuth("hunter2")
    assert port == 2222
    assert kwargs["logger"] is logger
    assert source.session is session


def test_with_key_passes_key_auth(tmp_path: Path) -> None:
    calls: list[tuple[Credential, int, dict[str, Any]]] = []
    key = tmp_path / "id_rsa"

    TunnelingDataSource.with_key(
        "deploy@bastion",
        key,
        passphrase="phrase",
        pool=_FakePool(),
        session_factory=_recording_factory(calls, _FakeSession()),
    )

    credential, port, _ = calls[0]
    assert credential.auth == KeyFileAuth(key, "phrase")
    assert port == 22


@pytest.mark.parametrize("credential", ["bastion", "a@b@c"])
def test_open_rejects_malformed_credential(credential: str) -> None:
    calls: list[tuple[Credential, int, dict[str, Any]]] = []

    with pytest.raises(CredentialError):
        TunnelingDataSource.with_password(
            credential, "x", session_factory=_recording_factory(calls, _FakeSession())
        )
    assert calls == []


@pytest.mark.parametrize("port", [0, 65536])
def test_open_rejects_invalid_ssh_port(port: int) -> None:
    calls: list[tuple[Credential, int, dict[str, Any]]] = []

    with pytest.raises(ValueError):
        TunnelingDataSource.with_password(
            "deploy@bastion", "x", port, session_factory=_recording_factory(calls, _FakeSession())
        )
    assert calls == []


def test_open_propagates_session_failures() -> None:
    def _failing(credential: Credential, port: int, **kwargs: Any) -> _FakeSession:
        raise SshSessionError("auth failed")

    with pytest.raises(SshSessionError):
        TunnelingDataSource.with_password("deploy@bastion", "x", session_factory=_failing)


def test_open_data_source_from_config(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("sshdatasource.datasource.acquire_free_port", lambda **kwargs: 41000)
    session = _FakeSession()
    calls: list[tuple[Credential, int, dict[str, Any]]] = []
    config = DataSourceConfig.model_validate(
        {
            "ssh": {"destination": "deploy@bastion", "password": "hunter2", "connect_timeout": 3},
            "target": {"engine": "postgresql", "port": 5432, "database": "app", "remote_host": "db.internal"},
            "pool": {"username": "app"},
        }
    )

    source = open_data_source(config, session_factory=_recording_factory(calls, session))

    assert source.url == "postgresql://localhost:41000/app"
    assert session.forwards[41000].remote_host == "db.internal"
    assert calls[0][2]["connect_timeout"] == 3
    assert source.pool.settings.username == "app"  # type: ignore[attr-defined]
    source.close()


def test_open_data_source_closes_on_forward_failure(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr("sshdatasource.datasource.acquire_free_port", lambda **kwargs: 41000)
    session = _FakeSession(fail_forward=True)
    config = DataSourceConfig.model_validate(
        {
            "ssh": {"destination": "deploy@bastion", "password": "hunter2"},
            "target": {"engine": "mysql", "port": 3306},
        }
    )

    with pytest.raises(ForwardingError):
        open_data_source(config, session_factory=_recording_factory([], session))
    assert session.closed


def test_unknown_engine_name_is_rejected(fixed_port: int) -> None:
    session = _FakeSession()

    with pytest.raises(UnknownEngineError):
        _source(session).configure_target("db2", 50000, "app")
    assert session.forwards == {}
