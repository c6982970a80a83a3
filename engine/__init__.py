"""
Engine module - polling, aggregation and validation

Contains:
- poll: bounded predicate polling
- readiness: pod predicates and collection waiters
- fanout: concurrent per-agent checks
- snapshot: three-source service state snapshot
- consistency: desired/realized/dataplane validation
- preflight: composite preflight gate
"""

from .poll import Deadline, PollConfig, with_deadline, with_timeout
from .readiness import (
    check_ready, check_running, wait_for_pods, wait_for_pods_running, wait_for_service_endpoints,
)
from .fanout import ReadinessResult, all_ready, fan_out, wait_for_all
from .snapshot import AgentState, ConsistencySnapshot, build_snapshot
from .consistency import ConsistencyValidator
from .preflight import FailureLogDeduper, PreflightChecker, PreflightSettings

__all__ = [
    'AgentState',
    'ConsistencySnapshot',
    'ConsistencyValidator',
    'Deadline',
    'FailureLogDeduper',
    'PollConfig',
    'PreflightChecker',
    'PreflightSettings',
    'ReadinessResult',
    'all_ready',
    'build_snapshot',
    'check_ready',
    'check_running',
    'fan_out',
    'wait_for_all',
    'wait_for_pods',
    'wait_for_pods_running',
    'wait_for_service_endpoints',
    'with_deadline',
    'with_timeout',
]
