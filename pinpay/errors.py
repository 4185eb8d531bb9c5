"""
Exception hierarchy for PinPay

Expected protocol outcomes (not found, expired, already resolved) are
returned as result enums. Only the conditions below are raised.
"""

from typing import Optional


class PinPayError(Exception):
    """Base class for all PinPay errors"""


class ResourceExhaustedError(PinPayError):
    """No free PIN could be found within the configured number of attempts"""

    def __init__(self, attempts: int):
        super().__init__(f"No free PIN after {attempts} attempts")
        self.attempts = attempts


class InvalidTransitionError(PinPayError):
    """A status change outside the lifecycle graph was requested"""

    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Invalid status transition: {from_status} -> {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class RelayError(PinPayError):
    """Base class for errors raised by a relay client"""

    def __init__(self, message: str, task_id: Optional[str] = None):
        super().__init__(message)
        self.task_id = task_id


class TransientRelayError(RelayError):
    """Rate limit, timeout or transport failure. Safe to retry."""


class TerminalRelayError(RelayError):
    """On-chain or relay rejection. Never retried."""


class RelayUnavailableError(PinPayError):
    """Transient relay errors persisted past the retry bound"""

    def __init__(self, attempts: int, last_error: str):
        super().__init__(f"Relay unavailable after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error
