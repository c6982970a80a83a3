"""
Inventory Loader

Loads and parses the cluster inventory file (YAML): how to reach the
control node, where the agents run, and the preflight settings. Missing
keys fall back to defaults.
"""

import os
import logging
from typing import Dict, Any

import yaml

from collector.agent import AgentCommands
from engine.preflight import PreflightSettings

logger = logging.getLogger(__name__)

INTEGRATION_ENV = "CNI_INTEGRATION"

SSH_DEFAULTS = {
    "port": 22,
    "username": "root",
    "auth_type": "key",
    "key_file": None,
    "password": None,
    "timeout": 10,
}


class InventoryError(Exception):
    """Exception raised for inventory loading errors."""
    pass


def load_inventory(path: str) -> Dict[str, Any]:
    """
    Load and parse the inventory file.

    Args:
        path: Path to the inventory YAML file

    Returns:
        Dictionary containing:
        - ssh: SSH parameters of the control node, defaults merged
        - kubectl: kubectl command line prefix
        - commands: AgentCommands
        - settings: PreflightSettings

    Raises:
        InventoryError: If file cannot be loaded or parsed
    """
    path = os.path.expanduser(path)

    if not os.path.isfile(path):
        raise InventoryError(f"Inventory file not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise InventoryError(f"Failed to parse inventory file: {e}")
    except IOError as e:
        raise InventoryError(f"Failed to read inventory file: {e}")

    if not data:
        raise InventoryError("Inventory file is empty")
    if not isinstance(data, dict):
        raise InventoryError("Inventory file must contain a mapping")

    return process_inventory(data, env=os.environ)


def process_inventory(data: Dict[str, Any], env: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Process raw inventory data, merging defaults.

    Args:
        data: Raw parsed YAML data
        env: Environment used for overrides (CNI_INTEGRATION)

    Returns:
        Processed inventory
    """
    env = env or {}

    ssh = _section(data, "ssh")
    if not ssh.get("hostname"):
        raise InventoryError("No ssh.hostname defined in inventory")
    ssh_config = {"hostname": ssh["hostname"]}
    for key, default in SSH_DEFAULTS.items():
        ssh_config[key] = ssh.get(key, default)

    agents = _section(data, "agents")
    preflight = _section(data, "preflight")
    service = preflight.get("service") or {}
    base = PreflightSettings()

    integration = env.get(INTEGRATION_ENV) or preflight.get("integration") or ""
    if integration:
        logger.info(f"Using integration mode '{integration}'")

    try:
        settings = PreflightSettings(
            agent_namespace=str(agents.get("namespace", base.agent_namespace)),
            agent_selector=str(agents.get("selector", base.agent_selector)),
            timeout=float(preflight.get("timeout", base.timeout)),
            interval=float(preflight.get("interval", base.interval)),
            command_timeout=float(preflight.get("command_timeout", base.command_timeout)),
            log_repeat_threshold=int(preflight.get("log_repeat_threshold", base.log_repeat_threshold)),
            integration=str(integration),
            skip_health_integrations=tuple(
                preflight.get("skip_health_integrations", base.skip_health_integrations)
            ),
            service_name=str(service.get("name", base.service_name)),
            service_namespace=str(service.get("namespace", base.service_namespace)),
            strict_backends=bool(preflight.get("strict_backends", base.strict_backends)),
        )
    except (TypeError, ValueError) as e:
        raise InventoryError(f"Invalid preflight settings: {e}")

    if settings.interval <= 0 or settings.timeout <= 0:
        raise InventoryError("preflight.timeout and preflight.interval must be positive")

    commands = AgentCommands(**{
        key: value for key, value in _section(agents, "commands").items()
        if key in AgentCommands.__dataclass_fields__
    })

    return {
        "ssh": ssh_config,
        "kubectl": str(data.get("kubectl", "kubectl")),
        "commands": commands,
        "settings": settings,
    }


def get_ssh_config(inventory: Dict[str, Any]) -> Dict[str, Any]:
    """
    Extract SSH connection parameters of the control node.

    Returns:
        Dictionary with SSHClient keyword arguments
    """
    return dict(inventory["ssh"])


def _section(data: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise InventoryError(f"Inventory section '{key}' must be a mapping")
    return value
