"""
Verification error taxonomy.

TransientUnavailable
    A listing or remote command failed. Pollers retry it silently.
Timeout
    A deadline passed. Terminal; carries the last diagnostic.
Inconsistent
    Desired, realized and dataplane state disagree. Terminal.
Malformed
    A response could not be parsed. A false verdict inside a fan-out round,
    an aborting error inside a snapshot build.
Unhealthy
    An agent answered but reported a failure (no quorum, failing
    controller, unreachable peer).
"""

from typing import Optional


class VerificationError(Exception):
    """Base class for all verification errors."""
    pass


class TransientUnavailable(VerificationError):
    """Raised when a listing or remote command could not be completed."""
    pass


class Malformed(VerificationError):
    """Raised when a response does not match the expected schema."""
    pass


class Timeout(VerificationError, TimeoutError):
    """Raised when a poller deadline passes without success."""

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}\n{self.details}"
        return self.message


class Inconsistent(VerificationError):
    """
    Raised when the three state sources disagree.

    agent, frontend and backend are set when the mismatch can be pinned
    to a specific agent or address.
    """

    def __init__(
        self,
        message: str,
        agent: Optional[str] = None,
        frontend: Optional[str] = None,
        backend: Optional[str] = None
    ):
        super().__init__(message)
        self.agent = agent
        self.frontend = frontend
        self.backend = backend


class Unhealthy(VerificationError):
    """Raised when an agent reports a failing status, controller or peer."""
    pass
