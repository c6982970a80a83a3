"""
Concurrent fan-out across agents

Runs one check per agent in parallel, one worker thread per agent. Each
worker writes only its own result slot. The round verdict is the logical
AND of all slots, so completion order does not matter.

A failing agent never aborts the round: a VerificationError raised by one
agent becomes a false verdict with a diagnostic.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from collector.agent import AgentHandle
from errors import VerificationError

from .poll import Deadline, PollConfig, with_deadline

logger = logging.getLogger(__name__)

AgentCheck = Callable[[AgentHandle, Deadline], bool]


@dataclass(frozen=True)
class ReadinessResult:
    """Verdict of one agent in one fan-out round."""
    agent: AgentHandle
    verdict: bool
    diagnostic: Optional[str] = None


def _run_check(check: AgentCheck, agent: AgentHandle, deadline: Deadline) -> ReadinessResult:
    try:
        verdict = bool(check(agent, deadline))
    except VerificationError as e:
        logger.warning(f"Check failed on agent '{agent}': {e}")
        return ReadinessResult(agent=agent, verdict=False, diagnostic=str(e))
    return ReadinessResult(agent=agent, verdict=verdict)


def fan_out(
    agents: Sequence[AgentHandle],
    check: AgentCheck,
    deadline: Deadline
) -> List[ReadinessResult]:
    """
    Run check against every agent concurrently.

    Args:
        agents: Agents to check
        check: Callable(agent, deadline) -> bool
        deadline: Shared deadline; agents still running when it passes
            get a false verdict

    Returns:
        One ReadinessResult per agent, in the order of agents
    """
    if not agents:
        return []

    results: List[Optional[ReadinessResult]] = [None] * len(agents)

    def task(index: int) -> None:
        results[index] = _run_check(check, agents[index], deadline)

    pool = ThreadPoolExecutor(max_workers=len(agents), thread_name_prefix="fanout")
    try:
        futures = [pool.submit(task, i) for i in range(len(agents))]
        done, not_done = wait(futures, timeout=deadline.remaining())
        for future in done:
            # task() itself only lets unexpected errors out; surface them
            future.result()
    finally:
        pool.shutdown(wait=False, cancel_futures=True)

    final = []
    for index, agent in enumerate(agents):
        result = results[index]
        if result is None:
            result = ReadinessResult(agent=agent, verdict=False, diagnostic="no result before deadline")
        final.append(result)
    return final


def all_ready(results: Sequence[ReadinessResult]) -> bool:
    """Logical AND of all verdicts."""
    return all(r.verdict for r in results)


def wait_for_all(
    agents: Sequence[AgentHandle],
    check: AgentCheck,
    config: PollConfig,
    message: str = "timed out waiting for agents",
    describe: Optional[Callable[[AgentHandle], str]] = None
) -> None:
    """
    Repeat fan_out rounds until every agent passes check.

    On timeout describe(agent), when given, is called for every agent and
    the combined text is attached to the Timeout as details. It only
    explains the failure, it never changes the verdict.

    Raises:
        Timeout: If a round with all agents passing did not happen in time
    """
    def body(deadline: Deadline) -> bool:
        results = fan_out(agents, check, deadline)
        failed = [r for r in results if not r.verdict]
        logger.info(f"Fan-out round: {len(results) - len(failed)}/{len(results)} agents ready")
        return all_ready(results)

    def report() -> str:
        lines = []
        for agent in agents:
            try:
                lines.append(describe(agent))
            except VerificationError as e:
                lines.append(f"\tAgent: {agent} \terror: {e}")
        return "\n".join(lines)

    with_deadline(
        body,
        Deadline(config.timeout),
        config.interval,
        message,
        on_timeout=report if describe is not None else None,
    )
