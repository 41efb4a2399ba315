from __future__ import annotations


class OpsuiteError(Exception):
    """Base error for the automation engine."""


class DatabaseError(OpsuiteError):
    """Database layer failure."""


class ActionApprovalNotFoundError(OpsuiteError):
    """Action approval is missing or belongs to another tenant."""

    def __init__(self, message: str = "Action approval not found") -> None:
        super().__init__(message)


class ActionApprovalStateError(OpsuiteError):
    """Action approval is not in a valid state for the requested transition."""

    def __init__(
        self, message: str = "Action approval is not in a valid state for this operation"
    ) -> None:
        super().__init__(message)


class CapabilityConfigError(OpsuiteError):
    """Action approval is missing its module slug or capability."""


class CapabilityNotRegisteredError(CapabilityConfigError):
    """No handler is registered for the requested module capability."""

    def __init__(self, module_slug: str, capability: str) -> None:
        super().__init__(f"Capability {module_slug}.{capability} is not registered")
        self.module_slug = module_slug
        self.capability = capability


class CapabilityExecutionError(OpsuiteError):
    """Capability handler raised; only the message is kept."""


class JobTimeoutError(OpsuiteError):
    """Job ran past its execution deadline."""


class JobAttemptsExhaustedError(OpsuiteError):
    """The queue delivered a job again after its final allowed attempt."""


_TERMINAL_ERRORS = (
    ActionApprovalNotFoundError,
    ActionApprovalStateError,
    CapabilityConfigError,
    JobAttemptsExhaustedError,
)


def is_terminal_error(exc: BaseException) -> bool:
    # Terminal failures need operator action or re-approval, so queue retries are pointless.
    return isinstance(exc, _TERMINAL_ERRORS)
