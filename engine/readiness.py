"""
Readiness checks

Pure predicates classifying a single pod, and a waiter that applies one of
them across a label-selected collection of pods under the poller.
"""

import logging
from typing import Callable

from collector.kubernetes import PodStatus
from errors import Malformed, TransientUnavailable

from .poll import DEFAULT_INTERVAL, PollConfig, with_timeout

logger = logging.getLogger(__name__)

PodCheck = Callable[[PodStatus], bool]


def check_running(pod: PodStatus) -> bool:
    """The pod is scheduled and running, and not being deleted."""
    return pod.phase == "Running" and not pod.deleting


def check_ready(pod: PodStatus) -> bool:
    """The pod is running and every container reports ready."""
    if not check_running(pod):
        return False
    return all(pod.container_ready)


def wait_for_pods(
    control_plane,
    namespace: str,
    selector: str,
    min_required: int,
    timeout: float,
    check: PodCheck = check_ready,
    interval: float = DEFAULT_INTERVAL
) -> None:
    """
    Wait until enough pods matching selector satisfy check.

    When min_required is 0 the required count is the number of pods listed
    on each attempt, so pods appearing during the wait raise the bar.

    Args:
        control_plane: collector.kubernetes.ControlPlane
        namespace: Namespace to list
        selector: Label selector, empty for all pods
        min_required: Pods that must pass, or 0 for all of them
        timeout: Seconds to wait
        check: Pod predicate, check_ready or check_running
        interval: Seconds between attempts

    Raises:
        Timeout: If the condition was not met in time
    """
    def body() -> bool:
        try:
            pods = control_plane.list_pods(namespace, selector)
        except (TransientUnavailable, Malformed) as e:
            logger.info(f"Error while listing pods: {e}")
            return False

        required = min_required if min_required > 0 else len(pods)
        if len(pods) < required:
            logger.debug(f"{len(pods)}/{required} pods listed in {namespace} ({selector})")
            return False

        satisfied = sum(1 for pod in pods if check(pod))
        logger.debug(f"{satisfied}/{required} pods pass {getattr(check, '__name__', 'check')} in {namespace} ({selector})")
        return satisfied >= required

    with_timeout(
        body,
        f"timed out waiting for pods with selector '{selector}' in namespace {namespace} to be ready",
        PollConfig(timeout=timeout, interval=interval),
    )


def wait_for_pods_running(
    control_plane,
    namespace: str,
    selector: str,
    min_required: int,
    timeout: float,
    interval: float = DEFAULT_INTERVAL
) -> None:
    """Same as wait_for_pods, only requiring pods to run."""
    wait_for_pods(control_plane, namespace, selector, min_required, timeout,
                  check=check_running, interval=interval)


def wait_for_service_endpoints(
    control_plane,
    namespace: str,
    service: str,
    timeout: float,
    interval: float = DEFAULT_INTERVAL
) -> None:
    """
    Wait until the endpoints of a service expose at least one port.

    Raises:
        Timeout: If the service has no populated endpoints in time
    """
    def body() -> bool:
        try:
            endpoints = control_plane.list_endpoints(namespace)
        except (TransientUnavailable, Malformed) as e:
            logger.info(f"Error while listing endpoints: {e}")
            return False

        for ep in endpoints:
            if ep.name == service and ep.subsets and ep.subsets[0].ports:
                return True

        logger.info(f"Service endpoint not ready: {namespace}/{service}")
        return False

    with_timeout(
        body,
        f"could not get endpoints of service {namespace}/{service}",
        PollConfig(timeout=timeout, interval=interval),
    )
