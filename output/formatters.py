"""
Output Formatters

Formats diagnostics for humans and provides report sinks. A report sink is
anything with write(label, text); the checker hands it finished text and
does not care where it ends up.
"""

import logging
import sys
from typing import Dict, List, Optional, Sequence, TextIO

from collector.agent import AgentHandle, AgentStatus, EndpointStatus
from errors import Inconsistent

logger = logging.getLogger(__name__)


class LoggingReportSink:
    """Report sink that writes every report to a logger at INFO."""

    def __init__(self, name: str = "report"):
        self._logger = logging.getLogger(name)

    def write(self, label: str, text: str) -> None:
        self._logger.info(f"{label}:\n{text}")


class StreamReportSink:
    """Report sink that writes framed reports to a text stream."""

    def __init__(self, stream: Optional[TextIO] = None):
        self.stream = stream or sys.stdout

    def write(self, label: str, text: str) -> None:
        self.stream.write(f"{'=' * 60}\n{label.upper()}\n{'-' * 40}\n{text}\n")
        self.stream.flush()


def format_endpoint_diagnostic(agent: AgentHandle, endpoints: Sequence[EndpointStatus]) -> str:
    """One line per endpoint managed by the agent."""
    if not endpoints:
        return f"\tAgent: {agent} \tno endpoints"
    lines = []
    for ep in endpoints:
        line = (
            f"\tAgent: {agent} \tEndpoint: {ep.id} \tIdentity: {ep.identity}"
            f"\tState: {ep.state}"
        )
        if ep.pod_name:
            line += f" \tPod: {ep.pod_name}"
        lines.append(line)
    return "\n".join(lines)


def format_agent_report(
    agents: Sequence[AgentHandle],
    statuses: Dict[AgentHandle, object]
) -> str:
    """
    Summarize agent states and controllers.

    Args:
        agents: Agents in report order
        statuses: AgentStatus per agent, or the exception raised while
            collecting it

    Returns:
        Report text
    """
    lines = [f"Agents: {', '.join(a.name for a in agents)}"]
    failed_lines: List[str] = []

    for agent in agents:
        status = statuses.get(agent)
        if not isinstance(status, AgentStatus):
            lines.append(f"  Agent '{agent}': status unavailable: {status}")
            continue

        failing = status.failing_controllers()
        marker = "[WARN] " if failing else ""
        lines.append(
            f"  {marker}Agent '{agent}' ({agent.node or 'unknown node'}): "
            f"Status: {status.state or '?'}  Health: {status.health_state or '?'}  "
            f"Kubernetes: {status.kubernetes_state or '?'}  KVstore: {status.kvstore_state or '?'}  "
            f"Controllers: Total {len(status.controllers)} Failed {len(failing)}"
        )
        for controller in failing:
            failed_lines.append(
                f"  {agent}: controller {controller.name} failure '{controller.last_failure}'"
            )

    if failed_lines:
        lines.append("Failed controllers:")
        lines.extend(failed_lines)
    return "\n".join(lines)


def format_issues(issues: Sequence[Inconsistent]) -> str:
    """Format consistency issues grouped by agent."""
    if not issues:
        return "No consistency issues found"

    lines = [f"Consistency issues ({len(issues)}):"]
    current: Optional[str] = None
    for issue in issues:
        agent = issue.agent or "-"
        if agent != current:
            lines.append(f"  {agent}")
            current = agent
        lines.append(f"    [ERROR] {issue}")
    return "\n".join(lines)
