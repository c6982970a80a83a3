"""
Command helpers shared by the collectors.

Runs a command through the runner (anything with execute(cmd, timeout)),
maps transport failures to TransientUnavailable and undecodable output to
Malformed, and provides small typed accessors used by the projection
functions.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from errors import Malformed, TransientUnavailable
from ssh_client import CmdResult, SSHClientError

logger = logging.getLogger(__name__)


def run_command(runner, cmd: str, what: str, timeout: Optional[float] = None) -> CmdResult:
    """
    Run a command and require a zero exit code.

    Args:
        runner: Command runner, e.g. SSHClient
        cmd: Shell command
        what: Short description used in error messages
        timeout: Command timeout in seconds

    Raises:
        TransientUnavailable: If the command could not run or failed
    """
    try:
        res = runner.execute(cmd, timeout=timeout)
    except SSHClientError as e:
        raise TransientUnavailable(f"{what}: {e}") from e

    if not res.success:
        raise TransientUnavailable(f"{what}: {res.pretty()}")
    return res


def decode_json(text: str, what: str) -> Any:
    """Decode command output, raising Malformed on invalid JSON."""
    try:
        return json.loads(text)
    except ValueError as e:
        raise Malformed(f"{what}: invalid JSON: {e}") from e


def run_json(runner, cmd: str, what: str, timeout: Optional[float] = None) -> Any:
    """Run a command and decode its stdout as JSON."""
    res = run_command(runner, cmd, what, timeout)
    return decode_json(res.stdout, what)


def _field(data: Any, key: str, what: str, required: bool) -> Any:
    """Look up data[key]; a non-object parent is always malformed."""
    if not isinstance(data, dict):
        raise Malformed(f"{what}: expected object holding '{key}', got {type(data).__name__}")
    value = data.get(key)
    if value is None and required:
        raise Malformed(f"{what}: missing required field '{key}'")
    return value


def get_dict(data: Any, key: str, what: str, required: bool = False) -> Dict[str, Any]:
    """Return data[key] as a dict; an optional missing or null key gives {}."""
    value = _field(data, key, what, required)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise Malformed(f"{what}: '{key}' is {type(value).__name__}, expected object")
    return value


def get_list(data: Any, key: str, what: str, required: bool = False) -> List[Any]:
    """Return data[key] as a list; an optional missing or null key gives []."""
    value = _field(data, key, what, required)
    if value is None:
        return []
    if not isinstance(value, list):
        raise Malformed(f"{what}: '{key}' is {type(value).__name__}, expected list")
    return value


def get_str(data: Any, key: str, what: str, default: str = "", required: bool = False) -> str:
    value = _field(data, key, what, required)
    if value is None:
        return default
    if not isinstance(value, str):
        raise Malformed(f"{what}: '{key}' is {type(value).__name__}, expected string")
    return value


def get_int(data: Any, key: str, what: str, default: int = 0, required: bool = False) -> int:
    value = _field(data, key, what, required)
    if value is None:
        return default
    # bool is an int subclass
    if isinstance(value, bool) or not isinstance(value, int):
        raise Malformed(f"{what}: '{key}' is {type(value).__name__}, expected integer")
    return value


def get_bool(data: Any, key: str, what: str, default: bool = False) -> bool:
    value = _field(data, key, what, False)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise Malformed(f"{what}: '{key}' is {type(value).__name__}, expected boolean")
    return value


def expect_list(data: Any, what: str) -> List[Any]:
    if not isinstance(data, list):
        raise Malformed(f"{what}: expected list, got {type(data).__name__}")
    return data


def expect_dict(data: Any, what: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise Malformed(f"{what}: expected object, got {type(data).__name__}")
    return data
