from opsuite.services.actions.approvals import (
    ApproveActionResult,
    approve_action,
    load_audit_log,
    reject_action,
    submit_action_approval,
)
from opsuite.services.actions.orchestrator import (
    ActionExecutionResult,
    ExecutionProgress,
    execute_action,
)

__all__ = [
    "ApproveActionResult",
    "approve_action",
    "load_audit_log",
    "reject_action",
    "submit_action_approval",
    "ActionExecutionResult",
    "ExecutionProgress",
    "execute_action",
]
