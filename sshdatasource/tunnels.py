"""SSH sessions carrying local port forwards."""

from __future__ import annotations

import logging
import select
import socketserver
import threading
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import paramiko

from .models import Credential, ForwardBinding, KeyFileAuth, PasswordAuth, validate_port
from .urls import LOCAL_HOST

LOG = logging.getLogger(__name__)

DEFAULT_SSH_PORT = 22
_CHUNK_SIZE = 16384


class SshSessionError(RuntimeError):
    """Raised when the SSH session cannot be established or used."""


class ForwardingError(SshSessionError):
    """Raised when a local port forward cannot be established."""


@runtime_checkable
class SshSession(Protocol):
    """Protocol implemented by SSH sessions able to forward local ports."""

    @property
    def is_active(self) -> bool:
        """Whether the underlying transport is still usable."""

    def forward_local_port(self, local_port: int, remote_host: str, remote_port: int) -> ForwardBinding:
        """Relay connections on ``localhost:local_port`` to ``remote_host:remote_port``."""

    def close_forward(self, local_port: int) -> None:
        """Stop the forward listening on ``local_port``, if any."""

    def close(self) -> None:
        """Stop every forward and terminate the session."""


class _ForwardServer(socketserver.ThreadingTCPServer):
    daemon_threads = True
    allow_reuse_address = True


class _TunnelHandler(socketserver.BaseRequestHandler):
    """Relays one local client connection over a ``direct-tcpip`` channel."""

    ssh_transport: Any
    remote_host: str
    remote_port: int
    log: logging.Logger

    def handle(self) -> None:
        try:
            chan = self.ssh_transport.open_channel(
                "direct-tcpip",
                (self.remote_host, self.remote_port),
                self.request.getpeername(),
            )
        except (paramiko.SSHException, OSError) as exc:
            self.log.error(
                "Forward request to %s:%s failed: %s", self.remote_host, self.remote_port, exc
            )
            return
        if chan is None:
            self.log.error("Forward request to %s:%s was rejected", self.remote_host, self.remote_port)
            return
        try:
            _relay(self.request, chan)
        except OSError as exc:
            self.log.debug(
                "Forward to %s:%s dropped: %s", self.remote_host, self.remote_port, exc
            )
        finally:
            chan.close()


def _relay(local: Any, chan: Any) -> None:
    while True:
        readable, _, _ = select.select([local, chan], [], [])
        if local in readable:
            data = local.recv(_CHUNK_SIZE)
            if not data:
                break
            chan.sendall(data)
        if chan in readable:
            data = chan.recv(_CHUNK_SIZE)
            if not data:
                break
            local.sendall(data)


@dataclass(slots=True)
class _Forward:
    binding: ForwardBinding
    server: _ForwardServer
    thread: threading.Thread


class ParamikoSshSession:
    """SSH session backed by a paramiko client."""

    def __init__(self, client: paramiko.SSHClient, *, logger: logging.Logger | None = None) -> None:
        self._client = client
        self._log = logger or LOG
        self._forwards: dict[int, _Forward] = {}
        self._closed = False

    @classmethod
    def open(
        cls,
        credential: Credential,
        port: int = DEFAULT_SSH_PORT,
        *,
        connect_timeout: float | None = None,
        host_key_policy: paramiko.MissingHostKeyPolicy | None = None,
        logger: logging.Logger | None = None,
    ) -> ParamikoSshSession:
        """Connect and authenticate, raising ``SshSessionError`` on failure."""

        log = logger or LOG
        validate_port(port, name="ssh port")
        kwargs: dict[str, object] = {
            "port": port,
            "username": credential.username,
            "timeout": connect_timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }
        auth = credential.auth
        if isinstance(auth, KeyFileAuth):
            kwargs["key_filename"] = str(auth.resolve())
            kwargs["passphrase"] = auth.passphrase
        elif isinstance(auth, PasswordAuth):
            kwargs["password"] = auth.password
        else:
            raise TypeError(f"unsupported SSH auth method {type(auth).__name__}")

        client = paramiko.SSHClient()
        client.load_system_host_keys()
        client.set_missing_host_key_policy(host_key_policy or paramiko.AutoAddPolicy())
        log.info("connecting to %s:%s...", credential.host, port)
        try:
            client.connect(credential.host, **kwargs)
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            log.error("Error establishing ssh connection to %s", credential, exc_info=True)
            raise SshSessionError(f"Failed to establish SSH session to {credential}:{port}: {exc}") from exc
        log.info("connected")
        return cls(client, logger=log)

    @property
    def is_active(self) -> bool:
        if self._closed:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    @property
    def forwards(self) -> tuple[ForwardBinding, ...]:
        """Forwards currently listening."""

        return tuple(forward.binding for forward in self._forwards.values())

    def forward_local_port(self, local_port: int, remote_host: str, remote_port: int) -> ForwardBinding:
        transport = self._client.get_transport()
        if self._closed or transport is None or not transport.is_active():
            raise ForwardingError("SSH session is not active")
        if local_port in self._forwards:
            raise ForwardingError(f"Local port {local_port} is already forwarded")

        handler = type(
            "TunnelHandler",
            (_TunnelHandler,),
            {
                "ssh_transport": transport,
                "remote_host": remote_host,
                "remote_port": remote_port,
                "log": self._log,
            },
        )
        try:
            server = _ForwardServer((LOCAL_HOST, local_port), handler)
        except OSError as exc:
            raise ForwardingError(f"Cannot listen on {LOCAL_HOST}:{local_port}: {exc}") from exc
        thread = threading.Thread(
            target=server.serve_forever,
            name=f"sshdatasource-forward-{local_port}",
            daemon=True,
        )
        thread.start()
        binding = ForwardBinding(local_port=local_port, remote_host=remote_host, remote_port=remote_port)
        self._forwards[local_port] = _Forward(binding=binding, server=server, thread=thread)
        self._log.info("forwarding %s", binding)
        return binding

    def close_forward(self, local_port: int) -> None:
        forward = self._forwards.pop(local_port, None)
        if forward is None:
            return
        forward.server.shutdown()
        forward.server.server_close()
        forward.thread.join(timeout=1)
        self._log.info("closed forward %s", forward.binding)

    def close(self) -> None:
        if self._closed:
            return
        for local_port in tuple(self._forwards):
            self.close_forward(local_port)
        self._closed = True
        self._client.close()
        self._log.info("ssh session closed")


__all__ = [
    "DEFAULT_SSH_PORT",
    "ForwardingError",
    "ParamikoSshSession",
    "SshSession",
    "SshSessionError",
]
