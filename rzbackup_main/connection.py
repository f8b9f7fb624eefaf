# Copyright 2024 Wolfgang Hoschek AT mac DOT com
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""Network and SSH helpers: how to reach a source host via ssh, directly or through a local port forwarding tunnel.

A target written as ``host:tunnel`` is reached by first running ``ssh -N -L PORT:host:22 TUNNEL_USER@TUNNEL_HOST`` in the
background and then talking to ``root@localhost -p PORT``. The tunnel is torn down when the ``with`` block exits. PORT is
TUNNEL_PORT plus a stable per host offset, so that concurrent runs for different hosts use different local ports.
"""

from __future__ import (
    annotations,
)
import socket
import subprocess
import time
import types
import zlib
from subprocess import (
    DEVNULL,
)
from typing import (
    TYPE_CHECKING,
    Callable,
    Final,
    final,
)

from rzbackup_main.errors import (
    UNREACHABLE_SOURCE,
    BackupError,
)
from rzbackup_main.util.utils import (
    LOG_TRACE,
    list_formatter,
)

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from rzbackup_main.configuration import (
        Params,
        Target,
    )
    from rzbackup_main.locks import (
        LockManager,
    )

TUNNEL_USER_HOST: Final[tuple[str, str]] = ("root", "localhost")
TUNNEL_PORT_SPREAD: Final[int] = 1000  # number of local ports that tunnels of different hosts are spread across


def tunnel_port(p: Params, target: Target) -> int:
    """Returns the local port of the tunnel to ``target``: TUNNEL_PORT plus a stable offset derived from the host name."""
    base: int = p.tunnel.port
    spread: int = max(1, min(TUNNEL_PORT_SPREAD, 65536 - base))
    return base + zlib.crc32(target.host.encode("utf-8")) % spread


def is_local_port_free(port: int) -> bool:
    """Returns True if nothing listens on the given port of the loopback interface."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)  # ignore connections in TIME_WAIT
        try:
            sock.bind((TUNNEL_USER_HOST[1], port))
        except OSError:
            return False
    return True


#############################################################################
@final
class Remote:
    """How to log into the source host of a target; for tunneled targets this is the local end of the tunnel."""

    def __init__(self, p: Params, target: Target) -> None:
        self.target: Final[Target] = target
        self.ssh_program: Final[str] = p.ssh_program
        self.keyfile: Final[str] = p.keyfile
        if target.tunnel:
            self.user, self.host = TUNNEL_USER_HOST
            self.port: int | None = tunnel_port(p, target)
            self.ssh_extra_opts: list[str] = ["-o", "NoHostAuthenticationForLocalhost=yes"]
        else:
            self.user, self.host = target.user, target.host
            self.port = None
            self.ssh_extra_opts = []

    @property
    def ssh_user_host(self) -> str:
        return f"{self.user}@{self.host}"

    def ssh_cmd(self) -> list[str]:
        """Returns the ssh command line without the user@host part, e.g. for use with ``rsync -e``."""
        cmd: list[str] = [self.ssh_program]
        if self.keyfile:
            cmd += ["-i", self.keyfile]
        if self.port is not None:
            cmd += ["-p", str(self.port)]
        return cmd + self.ssh_extra_opts

    def __repr__(self) -> str:
        return str(self.__dict__)


#############################################################################
@final
class Tunnel:
    """Context manager that runs an ssh port forwarding tunnel for the duration of a ``with`` block; a no-op for targets
    that do not need a tunnel.

    Each host gets its own local port. If a ``lock_manager`` is given, the port is also locked for the lifetime of the
    tunnel, so that two hosts whose ports happen to coincide are never forwarded through the same port at the same time.
    Before starting ssh, the port must be free; ssh runs with ExitOnForwardFailure, so a failed bind terminates it instead
    of leaving the readiness check to talk to some other listener.
    """

    def __init__(
        self,
        p: Params,
        target: Target,
        lock_manager: LockManager | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        connect_fn: Callable[[tuple[str, int], float], socket.socket] = socket.create_connection,
        port_free_fn: Callable[[int], bool] = is_local_port_free,
    ) -> None:
        self.params: Final[Params] = p
        self.target: Final[Target] = target
        self.lock_manager: Final[LockManager | None] = lock_manager
        self.sleep_fn: Final[Callable[[float], None]] = sleep_fn
        self.connect_fn: Final[Callable[[tuple[str, int], float], socket.socket]] = connect_fn
        self.port_free_fn: Final[Callable[[int], bool]] = port_free_fn
        self.port: Final[int] = tunnel_port(p, target)
        self.lock_key: Final[str] = f"tunnel-{self.port}"
        self.proc: subprocess.Popen | None = None
        self._is_locked: bool = False

    def cmd(self) -> list[str]:
        tunnel = self.params.tunnel
        forward = f"{self.port}:{self.target.host}:22"
        opts = ["-o", "ExitOnForwardFailure=yes"]
        return [self.params.ssh_program, "-N", *opts, "-L", forward, f"{tunnel.user}@{tunnel.host}"]

    def __enter__(self) -> Tunnel:
        if not self.target.tunnel:
            return self
        p, log = self.params, self.params.log
        if self.lock_manager is not None:
            self.lock_manager.acquire(self.lock_key)
            self._is_locked = True
        try:
            cmd = self.cmd()
            log.info("Establishing tunnel to %s via %s on port %s", self.target.host, p.tunnel.host, self.port)
            log.debug("Would execute: %s" if p.dry_run else "Executing: %s", list_formatter(cmd))
            if p.dry_run:
                return self
            if not self.port_free_fn(self.port):
                raise BackupError(UNREACHABLE_SOURCE, f"local tunnel port {self.port} is already in use", self.target.host)
            self.proc = subprocess.Popen(cmd, stdin=DEVNULL, stdout=DEVNULL, stderr=DEVNULL)
            self._wait_until_ready()
        except BaseException:
            self.close()
            raise
        return self

    def __exit__(
        self, exc_type: type[BaseException] | None, exc: BaseException | None, tb: types.TracebackType | None
    ) -> None:
        self.close()

    def _wait_until_ready(self) -> None:
        """Polls the local end of the tunnel until it accepts connections, the ssh process dies, or the wait expires."""
        assert self.proc is not None
        port: int = self.port
        deadline: float = time.monotonic() + self.params.tunnel.wait_secs
        while True:
            if self.proc.poll() is not None:
                raise BackupError(
                    UNREACHABLE_SOURCE, f"tunnel exited early with return code {self.proc.returncode}", self.target.host
                )
            try:
                self.connect_fn((TUNNEL_USER_HOST[1], port), 1.0).close()
                self.params.log.log(LOG_TRACE, "Tunnel is accepting connections on port %s", port)
                return
            except OSError:
                pass
            if time.monotonic() >= deadline:
                raise BackupError(
                    UNREACHABLE_SOURCE,
                    f"tunnel on port {port} not ready after {self.params.tunnel.wait_secs} seconds",
                    self.target.host,
                )
            self.sleep_fn(0.5)

    def close(self) -> None:
        """Terminates the tunnel process, if any, and releases the port lock, if held."""
        proc = self.proc
        self.proc = None
        if proc is not None:
            self.params.log.info("Shutting down tunnel with pid %s", proc.pid)
            proc.terminate()
            try:
                proc.wait(timeout=10)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()
        if self._is_locked:
            self._is_locked = False
            assert self.lock_manager is not None
            self.lock_manager.release(self.lock_key)
