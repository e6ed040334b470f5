"""
Task data model for the plan/implement/review pipeline.

A Task accumulates its Plan, Implementation and latest Review as it flows
through the stages. Those fields are only ever set, never cleared, so a
failed task still carries everything needed to replay what happened.

Payloads are a tagged union keyed by ``Task.type``: each registered type
maps to one payload dataclass, validated at the planning boundary.
"""

import copy
from dataclasses import dataclass, field, fields
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple, Type

from .exceptions import (
    PayloadValidationError, PlanValidationError, UnsupportedTaskType, ValidationError,
)


# ══════════════════════════════════════════════════════════════════════════════
# ENUMS
# ══════════════════════════════════════════════════════════════════════════════

class TaskType(str, Enum):
    """Built-in task types. Further types can be added with register_task_type()."""
    CODING = "coding"
    OPTIMIZATION = "optimization"
    TEST = "test"
    PROJECT = "project"


class TaskStatus(Enum):
    """Task lifecycle status."""
    PENDING = "pending"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(Enum):
    """Plan step status."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class PipelineStage(Enum):
    """Stage a task is routed for."""
    PLANNING = "planning"
    IMPLEMENTING = "implementing"
    REVIEWING = "reviewing"


# ══════════════════════════════════════════════════════════════════════════════
# PAYLOADS (tagged union keyed by task type)
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class TaskPayload:
    """Base payload. ``REQUIRED`` names the fields a caller must supply."""
    REQUIRED: ClassVar[Tuple[str, ...]] = ()

    description: str = ""

    @classmethod
    def from_dict(cls, task_type: str, data: Dict[str, Any]) -> "TaskPayload":
        if not isinstance(data, dict):
            raise PayloadValidationError(task_type, "data", f"expected mapping, got {type(data).__name__}")

        kwargs = {}
        for f in fields(cls):
            required = f.name in cls.REQUIRED
            if f.name not in data or data[f.name] is None:
                if required:
                    raise PayloadValidationError(task_type, f.name, "missing required field")
                continue
            value = data[f.name]
            if f.type is str:
                if not isinstance(value, str):
                    raise PayloadValidationError(task_type, f.name, "expected string")
                if required and not value.strip():
                    raise PayloadValidationError(task_type, f.name, "field cannot be empty")
            elif f.type == List[str]:
                if isinstance(value, str) or not isinstance(value, (list, tuple)):
                    raise PayloadValidationError(task_type, f.name, "expected list of strings")
                if not all(isinstance(item, str) for item in value):
                    raise PayloadValidationError(task_type, f.name, "expected list of strings")
                value = list(value)
            kwargs[f.name] = value
        return cls(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: copy.deepcopy(getattr(self, f.name)) for f in fields(self)}


@dataclass
class CodingPayload(TaskPayload):
    """Write new code from a description and requirement list."""
    REQUIRED: ClassVar[Tuple[str, ...]] = ("description",)

    requirements: List[str] = field(default_factory=list)


@dataclass
class OptimizationPayload(TaskPayload):
    """Improve existing code towards a goal."""
    REQUIRED: ClassVar[Tuple[str, ...]] = ("code",)

    code: str = ""
    goal: str = ""


@dataclass
class TestPayload(TaskPayload):
    """Add tests for a described behaviour, optionally against given code."""
    __test__ = False
    REQUIRED: ClassVar[Tuple[str, ...]] = ("description",)

    code: str = ""


@dataclass
class ProjectPayload(TaskPayload):
    """Produce a project skeleton through an external artifact producer."""
    REQUIRED: ClassVar[Tuple[str, ...]] = ("description", "output_path")

    output_path: str = ""
    requirements: List[str] = field(default_factory=list)
    framework: str = ""


_PAYLOAD_TYPES: Dict[str, Type[TaskPayload]] = {
    TaskType.CODING.value: CodingPayload,
    TaskType.OPTIMIZATION.value: OptimizationPayload,
    TaskType.TEST.value: TestPayload,
    TaskType.PROJECT.value: ProjectPayload,
}


def register_task_type(name: str, payload_cls: Type[TaskPayload] = TaskPayload) -> None:
    """Register (or replace) the payload schema for a task type."""
    if not name or not isinstance(name, str):
        raise ValidationError("Task type name must be a non-empty string")
    if not (isinstance(payload_cls, type) and issubclass(payload_cls, TaskPayload)):
        raise ValidationError(f"Payload class for '{name}' must subclass TaskPayload")
    _PAYLOAD_TYPES[name] = payload_cls


def supported_task_types() -> List[str]:
    return sorted(_PAYLOAD_TYPES)


def parse_payload(task_type: str, data: Any) -> TaskPayload:
    """Validate raw task data against the payload schema of its type."""
    payload_cls = _PAYLOAD_TYPES.get(task_type)
    if payload_cls is None:
        raise UnsupportedTaskType(task_type, supported=supported_task_types())
    if isinstance(data, payload_cls):
        return data
    if isinstance(data, TaskPayload):
        data = data.to_dict()
    return payload_cls.from_dict(task_type, data)


# ══════════════════════════════════════════════════════════════════════════════
# PLAN
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class Step:
    """One plan step. Ids are 1-based and give the execution order."""
    id: int
    action: str
    status: StepStatus = StepStatus.PENDING
    details: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "action": self.action,
            "status": self.status.value,
            "details": self.details,
        }


@dataclass
class Plan:
    """Ordered step list produced by a planner."""
    steps: List[Step] = field(default_factory=list)

    @classmethod
    def from_actions(cls, actions: Iterable[Tuple[str, str]]) -> "Plan":
        return cls(steps=[
            Step(id=i, action=action, details=details)
            for i, (action, details) in enumerate(actions, start=1)
        ])

    def validate(self) -> None:
        """Raise PlanValidationError unless step ids are exactly 1..n in order."""
        if not self.steps:
            raise PlanValidationError("plan has no steps")
        ids = [step.id for step in self.steps]
        expected = list(range(1, len(self.steps) + 1))
        if ids != expected:
            raise PlanValidationError(f"step ids must be {expected}, got {ids}")

    def next_step(self) -> Optional[Step]:
        for step in self.steps:
            if step.status != StepStatus.COMPLETED:
                return step
        return None

    def completed_steps(self) -> List[Step]:
        return [s for s in self.steps if s.status == StepStatus.COMPLETED]

    @property
    def is_complete(self) -> bool:
        return bool(self.steps) and all(s.status == StepStatus.COMPLETED for s in self.steps)

    @property
    def actions(self) -> List[str]:
        return [s.action for s in self.steps]

    def to_dict(self) -> Dict[str, Any]:
        return {"steps": [s.to_dict() for s in self.steps]}


# ══════════════════════════════════════════════════════════════════════════════
# RESULTS
# ══════════════════════════════════════════════════════════════════════════════

def _unit(value: float) -> float:
    return round(min(1.0, max(0.0, float(value))), 2)


@dataclass
class Implementation:
    """Doer output after executing a plan."""
    success: bool
    message: str
    code: Optional[str] = None
    artifact_ref: Optional[str] = None
    completed_steps: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "message": self.message,
            "code": self.code,
            "artifact_ref": self.artifact_ref,
            "completed_steps": list(self.completed_steps),
        }


@dataclass
class Assessment:
    """Scores in [0, 1]; values outside are clamped."""
    quality: float = 0.0
    completeness: float = 0.0
    efficiency: float = 0.0

    def __post_init__(self):
        self.quality = _unit(self.quality)
        self.completeness = _unit(self.completeness)
        self.efficiency = _unit(self.efficiency)

    def to_dict(self) -> Dict[str, float]:
        return {
            "quality": self.quality,
            "completeness": self.completeness,
            "efficiency": self.efficiency,
        }


@dataclass
class ResultMetrics:
    time_spent: float = 0.0  # milliseconds
    confidence: float = 0.0
    performance_improvement: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "time_spent": self.time_spent,
            "confidence": self.confidence,
            "performance_improvement": self.performance_improvement,
        }


@dataclass
class TaskResult:
    """Outcome of one stage. Planner fills ``plan``, Doer ``implementation``,
    Reviewer ``assessment`` and ``suggestions``."""
    task_id: str
    status: TaskStatus = TaskStatus.COMPLETED
    agent_id: Optional[str] = None
    plan: Optional[Plan] = None
    implementation: Optional[Implementation] = None
    assessment: Assessment = field(default_factory=Assessment)
    suggestions: List[str] = field(default_factory=list)
    metrics: ResultMetrics = field(default_factory=ResultMetrics)
    error: Optional[str] = None
    cause: Optional[BaseException] = field(default=None, repr=False, compare=False)

    @classmethod
    def failed(cls, task_id: str, error: str, agent_id: Optional[str] = None,
               cause: Optional[BaseException] = None) -> "TaskResult":
        return cls(task_id=task_id, status=TaskStatus.FAILED, agent_id=agent_id,
                   error=error, cause=cause)

    @property
    def succeeded(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "agent_id": self.agent_id,
            "plan": self.plan.to_dict() if self.plan else None,
            "implementation": self.implementation.to_dict() if self.implementation else None,
            "assessment": self.assessment.to_dict(),
            "suggestions": list(self.suggestions),
            "metrics": self.metrics.to_dict(),
            "error": self.error,
        }


# ══════════════════════════════════════════════════════════════════════════════
# TASK
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class Task:
    """Unit of work routed through the pipeline."""
    id: str
    type: str
    data: Any = field(default_factory=dict)
    priority: int = 0
    required_capabilities: Set[str] = field(default_factory=set)
    deadline: Optional[datetime] = None
    status: TaskStatus = TaskStatus.PENDING
    assigned_to: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    stage: PipelineStage = PipelineStage.PLANNING
    payload: Optional[TaskPayload] = None
    plan: Optional[Plan] = None
    implementation: Optional[Implementation] = None
    review: Optional[TaskResult] = None
    failure_reason: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    history: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self):
        if not self.id or not isinstance(self.id, str):
            raise ValidationError("Task id must be a non-empty string")
        if isinstance(self.type, TaskType):
            self.type = self.type.value
        self.required_capabilities = set(self.required_capabilities or ())

    def touch(self) -> None:
        self.updated_at = datetime.now()

    def set_status(self, status: TaskStatus, assigned_to: Optional[str] = None) -> None:
        self.status = status
        if assigned_to is not None:
            self.assigned_to = assigned_to
        self.touch()

    def mark_failed(self, reason: str, error: Optional[BaseException] = None) -> None:
        self.failure_reason = reason
        if error is not None:
            to_dict = getattr(error, "to_dict", None)
            self.error = to_dict() if callable(to_dict) else {
                "exception_type": type(error).__name__,
                "message": str(error),
            }
        self.set_status(TaskStatus.FAILED)

    def stage_requirements(self, stage: Optional[PipelineStage] = None) -> FrozenSet[str]:
        """Capabilities an agent must advertise to take this task at ``stage``.

        ``required_capabilities`` describe the work itself, so they bind the
        implementing stage. Planning and reviewing only need the stage role.
        """
        stage = stage or self.stage
        if stage == PipelineStage.IMPLEMENTING:
            return frozenset(self.required_capabilities)
        return frozenset()

    def remaining_time(self, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds until the deadline, or None when the task has none."""
        if self.deadline is None:
            return None
        now = now or datetime.now(self.deadline.tzinfo)
        return (self.deadline - now).total_seconds()

    def record_attempt(self, attempt: int) -> None:
        """Snapshot the current plan and review before a replanning pass."""
        self.history.append({
            "attempt": attempt,
            "plan": self.plan.to_dict() if self.plan else None,
            "implementation": self.implementation.to_dict() if self.implementation else None,
            "review": self.review.to_dict() if self.review else None,
            "recorded_at": datetime.now().isoformat(),
        })

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "priority": self.priority,
            "data": self.payload.to_dict() if self.payload else copy.deepcopy(self.data),
            "required_capabilities": sorted(self.required_capabilities),
            "deadline": self.deadline.isoformat() if self.deadline else None,
            "status": self.status.value,
            "assigned_to": self.assigned_to,
            "stage": self.stage.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "plan": self.plan.to_dict() if self.plan else None,
            "implementation": self.implementation.to_dict() if self.implementation else None,
            "review": self.review.to_dict() if self.review else None,
            "failure_reason": self.failure_reason,
            "error": self.error,
            "history": copy.deepcopy(self.history),
        }
