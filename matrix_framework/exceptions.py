"""
Matrix Framework - Exception Hierarchy

Structured exception taxonomy for the agent runtime, the coordinator and
the plan/implement/review pipeline. Every failure mode carries context,
a recovery hint and a severity classification.
"""

from enum import Enum
from typing import Optional, Dict, Any, List
from datetime import datetime


# ══════════════════════════════════════════════════════════════════════════════
# SEVERITY CLASSIFICATION
# ══════════════════════════════════════════════════════════════════════════════

class ExceptionSeverity(Enum):
    """Severity levels for exceptions."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class RecoveryAction(Enum):
    """Recommended recovery actions."""
    RETRY = "retry"
    REPLAN = "replan"
    QUEUE = "queue"
    SKIP = "skip"
    ABORT = "abort"
    RECONFIGURE = "reconfigure"


# ══════════════════════════════════════════════════════════════════════════════
# BASE EXCEPTION
# ══════════════════════════════════════════════════════════════════════════════

class MatrixError(Exception):
    """
    Base exception for all Matrix Framework errors.
    Provides structured context, severity, and recovery guidance.
    """

    def __init__(
        self,
        message: str,
        severity: ExceptionSeverity = ExceptionSeverity.ERROR,
        recovery: RecoveryAction = RecoveryAction.ABORT,
        recovery_hint: str = "",
        context: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
        retryable: bool = False,
        error_code: str = "MATRIX-0000",
    ):
        super().__init__(message)
        self.severity = severity
        self.recovery = recovery
        self.recovery_hint = recovery_hint
        self.context = context or {}
        self.cause = cause
        self.retryable = retryable
        self.error_code = error_code
        self.timestamp = datetime.now().isoformat()

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging and task diagnostics."""
        return {
            "error_code": self.error_code,
            "severity": self.severity.value,
            "message": str(self),
            "recovery_action": self.recovery.value,
            "recovery_hint": self.recovery_hint,
            "retryable": self.retryable,
            "context": self.context,
            "cause": str(self.cause) if self.cause else None,
            "timestamp": self.timestamp,
            "exception_type": self.__class__.__name__,
        }

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} [{self.error_code}] "
            f"severity={self.severity.value} "
            f"message='{str(self)[:80]}'>"
        )


# ══════════════════════════════════════════════════════════════════════════════
# AGENT EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════════════

class AgentError(MatrixError):
    """Base class for agent runtime errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "MATRIX-AGT-0000")
        super().__init__(message, **kwargs)


class AgentInactiveError(AgentError):
    """Operation attempted on an agent after shutdown."""

    def __init__(self, agent_id: str, operation: str = "process_task", **kwargs):
        kwargs.setdefault("error_code", "MATRIX-AGT-0001")
        kwargs.setdefault("severity", ExceptionSeverity.WARNING)
        kwargs.setdefault("recovery", RecoveryAction.SKIP)
        kwargs.setdefault("recovery_hint", "Re-initialize the agent or route to another one.")
        kwargs.setdefault("context", {"agent_id": agent_id, "operation": operation})
        super().__init__(f"Agent {agent_id} is inactive, cannot {operation}", **kwargs)


class InvalidAgentError(AgentError):
    """Malformed agent rejected by the coordinator."""

    def __init__(self, reason: str, **kwargs):
        kwargs.setdefault("error_code", "MATRIX-AGT-0002")
        kwargs.setdefault("recovery", RecoveryAction.RECONFIGURE)
        super().__init__(f"Invalid agent: {reason}", **kwargs)


# ══════════════════════════════════════════════════════════════════════════════
# ROUTING EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════════════

class RoutingError(MatrixError):
    """Base class for coordinator routing errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "MATRIX-RTE-0000")
        super().__init__(message, **kwargs)


class NoSuitableAgentError(RoutingError):
    """Dispatch found zero candidates. The task is queued, not rejected."""

    def __init__(self, task_id: str, required: Optional[List[str]] = None,
                 role: str = "", **kwargs):
        kwargs.setdefault("error_code", "MATRIX-RTE-0001")
        kwargs.setdefault("severity", ExceptionSeverity.INFO)
        kwargs.setdefault("recovery", RecoveryAction.QUEUE)
        kwargs.setdefault("retryable", True)
        kwargs.setdefault("recovery_hint", "Register an agent advertising the required capabilities.")
        kwargs.setdefault("context", {"task_id": task_id, "required": required or [], "role": role})
        super().__init__(f"No suitable {role or 'agent'} for task {task_id}", **kwargs)


# ══════════════════════════════════════════════════════════════════════════════
# PIPELINE EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════════════

class PipelineError(MatrixError):
    """Base class for pipeline stage failures."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "MATRIX-PIP-0000")
        super().__init__(message, **kwargs)


class PlanningFailed(PipelineError):
    """Planner could not produce a plan."""

    def __init__(self, task_id: str, reason: str = "", **kwargs):
        kwargs.setdefault("error_code", "MATRIX-PIP-0001")
        kwargs.setdefault("context", {"task_id": task_id})
        super().__init__(f"Planning failed for task {task_id}: {reason}", **kwargs)


class ImplementationFailed(PipelineError):
    """Doer could not execute the plan."""

    def __init__(self, task_id: str, reason: str = "", step_id: Optional[int] = None, **kwargs):
        kwargs.setdefault("error_code", "MATRIX-PIP-0002")
        kwargs.setdefault("recovery", RecoveryAction.RETRY)
        kwargs.setdefault("context", {"task_id": task_id, "step_id": step_id})
        super().__init__(f"Implementation failed for task {task_id}: {reason}", **kwargs)


class ReviewFailed(PipelineError):
    """Reviewer raised while assessing an implementation."""

    def __init__(self, task_id: str, reason: str = "", **kwargs):
        kwargs.setdefault("error_code", "MATRIX-PIP-0003")
        kwargs.setdefault("context", {"task_id": task_id})
        super().__init__(f"Review failed for task {task_id}: {reason}", **kwargs)


class QualityThresholdNotMet(PipelineError):
    """Review quality stayed below the acceptance threshold after all replans."""

    def __init__(self, task_id: str, quality: float, threshold: float,
                 attempts: int = 0, **kwargs):
        kwargs.setdefault("error_code", "MATRIX-PIP-0004")
        kwargs.setdefault("severity", ExceptionSeverity.WARNING)
        kwargs.setdefault("recovery", RecoveryAction.REPLAN)
        kwargs.setdefault("context", {
            "task_id": task_id, "quality": quality,
            "threshold": threshold, "replans": attempts,
        })
        super().__init__(
            f"Quality {quality:.2f} below threshold {threshold:.2f} "
            f"for task {task_id} after {attempts} replan(s)",
            **kwargs
        )


class DeadlineExceeded(PipelineError):
    """A stage did not complete before the task deadline."""

    def __init__(self, task_id: str, stage: str = "", **kwargs):
        kwargs.setdefault("error_code", "MATRIX-PIP-0005")
        kwargs.setdefault("context", {"task_id": task_id, "stage": stage})
        super().__init__(f"Deadline exceeded for task {task_id} during {stage or 'dispatch'}", **kwargs)


# ══════════════════════════════════════════════════════════════════════════════
# VALIDATION EXCEPTIONS
# ══════════════════════════════════════════════════════════════════════════════

class ValidationError(MatrixError):
    """Base class for input validation errors."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("error_code", "MATRIX-VAL-0000")
        kwargs.setdefault("severity", ExceptionSeverity.WARNING)
        kwargs.setdefault("recovery", RecoveryAction.SKIP)
        super().__init__(message, **kwargs)


class UnsupportedTaskType(ValidationError):
    """Task type has no registered payload schema."""

    def __init__(self, task_type: str, supported: Optional[List[str]] = None, **kwargs):
        kwargs.setdefault("error_code", "MATRIX-VAL-0001")
        kwargs.setdefault("context", {"task_type": task_type, "supported": supported or []})
        super().__init__(f"Unsupported task type: {task_type}", **kwargs)


class PayloadValidationError(ValidationError):
    """Task payload does not match the schema of its type."""

    def __init__(self, task_type: str, field: str, reason: str = "missing", **kwargs):
        kwargs.setdefault("error_code", "MATRIX-VAL-0002")
        kwargs.setdefault("context", {"task_type": task_type, "field": field, "reason": reason})
        super().__init__(
            f"Invalid payload field '{field}' for task type '{task_type}': {reason}", **kwargs
        )


class PlanValidationError(ValidationError):
    """Plan steps are not contiguous and 1-based."""

    def __init__(self, reason: str, **kwargs):
        kwargs.setdefault("error_code", "MATRIX-VAL-0003")
        super().__init__(f"Invalid plan: {reason}", **kwargs)
