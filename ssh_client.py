"""
SSH Client Implementation

Command runner for the cluster control node. Every kubectl call made by the
collectors, including `kubectl exec` into agent pods, goes through a single
SSHClient shared by the poll loop and the fan-out workers.

Runner interface expected by the collectors:
- execute(cmd: str, timeout: Optional[float]) -> CmdResult
"""

import os
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

import paramiko

logger = logging.getLogger(__name__)


class SSHClientError(Exception):
    """Exception raised when the control node cannot be reached or a command cannot run."""
    pass


@dataclass(frozen=True)
class CmdResult:
    """Outcome of a remote command."""
    stdout: str
    stderr: str = ""
    exit_code: int = 0

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def pretty(self) -> str:
        """Combined output for error messages."""
        text = self.stdout.strip()
        if self.stderr.strip():
            text = f"{text}\n{self.stderr.strip()}" if text else self.stderr.strip()
        return f"exit code {self.exit_code}: {text}"


class SSHClient:
    """
    Thread-safe command runner on the control node.

    The session is opened on first use and reopened when paramiko reports
    the transport as inactive, so a long poll survives a dropped connection.
    Each command runs on its own channel of the shared transport.
    """

    def __init__(
        self,
        hostname: str,
        port: int = 22,
        username: str = "root",
        auth_type: str = "key",
        key_file: Optional[str] = None,
        password: Optional[str] = None,
        timeout: int = 10
    ):
        """
        Initialize SSH client.

        Args:
            hostname: Control node IP or hostname
            port: SSH port (default: 22)
            username: SSH username (default: root)
            auth_type: "key" or "password"
            key_file: Private key path (key auth); agent and default keys otherwise
            password: Password (password auth)
            timeout: Connect timeout and default command timeout in seconds
        """
        self.hostname = hostname
        self.port = port
        self.username = username
        self.auth_type = auth_type
        self.key_file = key_file
        self.password = password
        self.timeout = timeout

        self._client: Optional[paramiko.SSHClient] = None
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        if self._client is None:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def connect(self) -> None:
        """
        Open the session unless an active one exists.

        Raises:
            SSHClientError: If authentication or the connection fails
        """
        with self._lock:
            if self.connected:
                return
            if self._client is not None:
                logger.warning(f"Connection to {self.hostname} lost, reconnecting")
                self._client.close()

            client = paramiko.SSHClient()
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                logger.debug(f"Connecting to {self.hostname}:{self.port} as {self.username}")
                client.connect(**self._connect_kwargs())
            except paramiko.AuthenticationException as e:
                raise SSHClientError(f"Authentication failed for {self.hostname}: {e}")
            except paramiko.SSHException as e:
                raise SSHClientError(f"SSH error connecting to {self.hostname}: {e}")
            except OSError as e:
                raise SSHClientError(f"Network error connecting to {self.hostname}: {e}")

            self._client = client
            logger.info(f"Connected to {self.hostname}")

    def _connect_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "hostname": self.hostname,
            "port": self.port,
            "username": self.username,
            "timeout": self.timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }

        if self.auth_type == "password":
            if not self.password:
                raise SSHClientError("Password authentication requires a password")
            kwargs["password"] = self.password
        elif self.auth_type == "key":
            key_path = self._resolve_key_path()
            if key_path:
                kwargs["key_filename"] = key_path
            else:
                kwargs["allow_agent"] = True
                kwargs["look_for_keys"] = True
        else:
            raise SSHClientError(f"Unknown auth_type: {self.auth_type}")
        return kwargs

    def _resolve_key_path(self) -> Optional[str]:
        """Expand ~ in key_file; None if unset or missing."""
        if not self.key_file:
            return None

        path = os.path.expanduser(self.key_file)
        if not os.path.isfile(path):
            logger.warning(f"Key file not found: {path}, falling back to agent keys")
            return None
        return path

    def execute(self, cmd: str, timeout: Optional[float] = None) -> CmdResult:
        """
        Run a command on the control node.

        A nonzero exit code is not an error here; callers decide.

        Args:
            cmd: Shell command
            timeout: Channel timeout in seconds, the client timeout if unset

        Returns:
            CmdResult with stdout, stderr and exit code

        Raises:
            SSHClientError: If the session cannot be opened, the channel
                times out or the command cannot be started
        """
        self.connect()
        if timeout is None or timeout <= 0:
            timeout = self.timeout

        try:
            logger.debug(f"[{self.hostname}] $ {cmd}")
            _, stdout, stderr = self._client.exec_command(cmd, timeout=timeout)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            res = CmdResult(stdout=out, stderr=err, exit_code=stdout.channel.recv_exit_status())
        except paramiko.SSHException as e:
            raise SSHClientError(f"Failed to run command on {self.hostname}: {e}")
        except OSError as e:
            # socket.timeout is an OSError subclass
            raise SSHClientError(f"Command on {self.hostname} did not finish within {timeout}s: {e}")

        if not res.success:
            logger.debug(f"[{self.hostname}] exit {res.exit_code}: {res.stderr.strip()}")
        return res

    def close(self) -> None:
        with self._lock:
            if self._client is not None:
                self._client.close()
                self._client = None
                logger.debug(f"Disconnected from {self.hostname}")

    def __enter__(self) -> "SSHClient":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"SSHClient({self.username}@{self.hostname}:{self.port})"
