from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, ClassVar, Optional, Union, get_args, get_origin

from plangraph.utils import snake_to_camel


@dataclass
class JsonSerializable:
    def to_dict(self):
        def serialize(obj):
            if isinstance(obj, JsonSerializable) and obj is not self:
                return obj.to_dict()
            elif is_dataclass(obj):
                return {f.name: serialize(getattr(obj, f.name)) for f in fields(obj)}
            elif isinstance(obj, Enum):
                return obj.value  # Convert Enum to its value
            elif isinstance(obj, list):
                return [serialize(item) for item in obj]
            elif isinstance(obj, dict):
                return {key: serialize(value) for key, value in obj.items()}
            else:
                return obj

        return serialize(self)

    @classmethod
    def from_dict(cls, data):
        if data is None:
            return None

        def deserialize(cls_or_type, data):
            if data is None:
                return None
            if is_dataclass(cls_or_type):
                kwargs = {}
                for f in fields(cls_or_type):
                    value = data.get(f.name)
                    if value is not None:
                        kwargs[f.name] = deserialize_field(f.type, value)
                return cls_or_type(**kwargs)
            elif isinstance(cls_or_type, type) and issubclass(cls_or_type, Enum):
                return cls_or_type(data)
            else:
                return data

        def deserialize_field(field_type, value):
            if isinstance(field_type, str):
                # postponed annotations: let __post_init__ normalise the raw value
                return value

            origin = get_origin(field_type)
            args = get_args(field_type)

            if origin is list:
                return [deserialize_field(args[0], item) for item in value]
            elif origin is dict:
                key_type, val_type = args
                return {deserialize_field(key_type, k): deserialize_field(val_type, v) for k, v in value.items()}
            elif origin is Union:
                for arg in args:
                    try:
                        return deserialize_field(arg, value)
                    except (ValueError, TypeError):
                        continue
                return value
            elif is_dataclass(field_type):
                return deserialize(field_type, value)
            elif isinstance(field_type, type) and issubclass(field_type, Enum):
                return field_type(value)
            else:
                return value

        return deserialize(cls, data)


class ExecutionMode(Enum):
    """
    Execution-mode hint carried by a plan. Advisory only: the engine always builds a dependency graph.
    """

    SEQUENTIAL = "sequential"
    DAG = "dag"
    GRAPH = "graph"

    def __str__(self):
        return self.value


class StepType(Enum):
    TOOL = "tool"
    LOOP = "loop"
    PARALLEL = "parallel"
    REDUCE = "reduce"
    CONDITIONAL = "conditional"
    FINAL = "final"

    def __str__(self):
        return self.value


# ============================================================================
# Plan steps
# ============================================================================


@dataclass(kw_only=True)
class BaseStep(JsonSerializable):
    """Fields shared by every step of a plan."""

    type: ClassVar[StepType]

    id: str
    description: Optional[str] = None
    depends_on: list[str] = field(default_factory=list)
    timeout_ms: Optional[int] = None
    retry_count: Optional[int] = None

    def __post_init__(self):
        self.depends_on = list(self.depends_on or [])

    def to_dict(self):
        data = {"type": self.type.value}
        for key, value in super().to_dict().items():
            if value is None:
                continue
            data["as" if key == "as_" else key] = value
        return data


@dataclass(kw_only=True)
class ToolStep(BaseStep):
    """Calls one registered tool and stores its result under ``output`` (or the step id)."""

    type: ClassVar[StepType] = StepType.TOOL

    tool: str
    input: dict[str, Any] = field(default_factory=dict)
    output: Optional[str] = None

    def __post_init__(self):
        super().__post_init__()
        self.input = self.input or {}


@dataclass(kw_only=True)
class LoopStep(BaseStep):
    """Runs an inner tool step once per element of the array found at context path ``over``."""

    type: ClassVar[StepType] = StepType.LOOP

    over: str
    as_: str
    step: ToolStep
    output: Optional[str] = None
    concurrency: int = 1

    def __post_init__(self):
        super().__post_init__()
        self.step = parse_step(_with_default_id(self.step, f"{self.id}_step"))


@dataclass(kw_only=True)
class ParallelStep(BaseStep):
    """Sibling steps without any implied ordering among themselves."""

    type: ClassVar[StepType] = StepType.PARALLEL

    steps: list[PlanStep]
    output: Optional[str] = None

    def __post_init__(self):
        super().__post_init__()
        self.steps = [parse_step(step) for step in self.steps]


@dataclass(kw_only=True)
class ReduceStep(BaseStep):
    """
    Maps a reducer over an array, producing one result per element.

    Despite the name this is an element-wise map, not a fold.
    """

    type: ClassVar[StepType] = StepType.REDUCE

    input: str
    as_: str
    reducer: Union[str, ToolStep]
    output: str

    def __post_init__(self):
        super().__post_init__()
        if not isinstance(self.reducer, str):
            self.reducer = parse_step(_with_default_id(self.reducer, f"{self.id}_reducer"))


@dataclass(kw_only=True)
class ConditionalStep(BaseStep):
    """Selects the ``then`` or ``otherwise`` branch from a boolean expression over the context."""

    type: ClassVar[StepType] = StepType.CONDITIONAL

    condition: str
    then: list[PlanStep]
    otherwise: list[PlanStep] = field(default_factory=list)

    def __post_init__(self):
        super().__post_init__()
        self.then = [parse_step(step) for step in self.then]
        self.otherwise = [parse_step(step) for step in self.otherwise or []]


@dataclass(kw_only=True)
class FinalStep(BaseStep):
    """Terminal call, typically used for answer synthesis. Without ``function`` it does nothing."""

    type: ClassVar[StepType] = StepType.FINAL

    function: Optional[str] = None
    input: Optional[dict[str, Any]] = None
    output: Optional[str] = None


PlanStep = Union[ToolStep, LoopStep, ParallelStep, ReduceStep, ConditionalStep, FinalStep]

STEP_CLASSES: dict[StepType, type] = {
    StepType.TOOL: ToolStep,
    StepType.LOOP: LoopStep,
    StepType.PARALLEL: ParallelStep,
    StepType.REDUCE: ReduceStep,
    StepType.CONDITIONAL: ConditionalStep,
    StepType.FINAL: FinalStep,
}


def _with_default_id(data: Any, default_id: str) -> Any:
    if isinstance(data, dict) and not data.get("id"):
        return {**data, "id": default_id}
    return data


def step_type_of(data: dict) -> Optional[StepType]:
    """Returns the tag of a raw step mapping: its ``type`` key, or ``tool`` when a ``tool`` key is present."""
    raw_type = data.get("type")
    if raw_type is None and "tool" in data:
        return StepType.TOOL
    try:
        return StepType(raw_type)
    except ValueError:
        return None


def parse_step(data: Union[dict, BaseStep]) -> PlanStep:
    """
    Turns a raw step mapping into the matching step dataclass.

    :param data: A step as found in a plan document, or an already parsed step.
    :return: The parsed step.
    :raises ValueError: If the step type cannot be determined.
    """
    if isinstance(data, BaseStep):
        return data
    if not isinstance(data, dict):
        raise ValueError(f"Step must be a mapping, got {type(data).__name__}")

    step_type = step_type_of(data)
    if step_type is None:
        raise ValueError(f"Unknown step type for step '{data.get('id')}': {data.get('type')!r}")

    step_cls = STEP_CLASSES[step_type]
    field_names = {f.name for f in fields(step_cls)}
    kwargs = {}
    for key, value in data.items():
        name = "as_" if key == "as" else key
        if name in field_names:
            kwargs[name] = value

    return step_cls(**kwargs)


@dataclass
class Plan(JsonSerializable):
    """The root document handed to the engine."""

    steps: list[PlanStep]
    version: str = "1.0"
    execution: ExecutionMode = ExecutionMode.SEQUENTIAL
    plan: Optional[str] = None
    estimated_tokens: Optional[int] = None
    created_at: Optional[str] = None

    def __post_init__(self):
        self.steps = [parse_step(step) for step in self.steps]
        if isinstance(self.execution, str):
            self.execution = ExecutionMode(self.execution)

    @classmethod
    def from_dict(cls, data: dict) -> Plan:
        field_names = {f.name for f in fields(cls)}
        return cls(**{key: value for key, value in data.items() if key in field_names and value is not None})

    def to_dict(self):
        return {key: value for key, value in super().to_dict().items() if value is not None}

    def iter_steps(self):
        """Yields every step of the plan depth-first, including nested ones."""
        yield from iter_steps(self.steps)


def iter_steps(steps: list[PlanStep]):
    for step in steps:
        yield step
        if isinstance(step, LoopStep):
            yield from iter_steps([step.step])
        elif isinstance(step, ParallelStep):
            yield from iter_steps(step.steps)
        elif isinstance(step, ConditionalStep):
            yield from iter_steps(step.then + step.otherwise)
        elif isinstance(step, ReduceStep) and isinstance(step.reducer, ToolStep):
            yield from iter_steps([step.reducer])


# ============================================================================
# Graph nodes
# ============================================================================

NodeFn = Callable[[dict], Union[Awaitable[Any], Any]]


@dataclass
class NodeMetadata:
    original_step_id: Optional[str] = None
    tool_name: Optional[str] = None
    loop_index: Optional[int] = None
    output_path: Optional[str] = None
    input_schema: Optional[type] = None
    timeout_ms: Optional[int] = None
    max_retries: Optional[int] = None


@dataclass
class GraphNode:
    """A compiled, independently schedulable unit of work."""

    id: str
    fn: NodeFn
    deps: list[str] = field(default_factory=list)
    executed: bool = False
    metadata: NodeMetadata = field(default_factory=NodeMetadata)


# ============================================================================
# Execution trace
# ============================================================================


class TraceStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"  # reserved, never produced by the scheduler
    CANCELLED = "cancelled"

    def __str__(self):
        return self.value


def _camel_case_dict(data: dict) -> dict:
    return {snake_to_camel(key): value for key, value in data.items() if value is not None}


@dataclass
class TraceEntry(JsonSerializable):
    node_id: str
    start_time: str
    status: TraceStatus = TraceStatus.PENDING
    step_id: Optional[str] = None
    end_time: Optional[str] = None
    duration_ms: Optional[float] = None
    error: Optional[str] = None
    output: Any = None
    retry_count: int = 0
    tool_name: Optional[str] = None

    def to_json_dict(self) -> dict:
        return _camel_case_dict(self.to_dict())


@dataclass
class TraceStatistics(JsonSerializable):
    total_steps: int = 0
    successful_steps: int = 0
    failed_steps: int = 0
    skipped_steps: int = 0
    cancelled_steps: int = 0

    @classmethod
    def from_entries(cls, entries: list[TraceEntry]) -> TraceStatistics:
        def count(status: TraceStatus) -> int:
            return sum(1 for entry in entries if entry.status == status)

        return cls(
            total_steps=len(entries),
            successful_steps=count(TraceStatus.SUCCESS),
            failed_steps=count(TraceStatus.FAILED),
            skipped_steps=count(TraceStatus.SKIPPED),
            cancelled_steps=count(TraceStatus.CANCELLED),
        )


@dataclass
class ExecutionTrace(JsonSerializable):
    """Structured record of every node's lifecycle during one run."""

    plan_id: str
    execution_mode: ExecutionMode
    started_at: str
    finished_at: Optional[str] = None
    total_duration_ms: Optional[float] = None
    entries: list[TraceEntry] = field(default_factory=list)
    statistics: Optional[TraceStatistics] = None
    context_snapshot: Optional[dict[str, Any]] = None

    def entry_for(self, node_id: str) -> Optional[TraceEntry]:
        return next((entry for entry in self.entries if entry.node_id == node_id), None)

    def to_json_dict(self) -> dict:
        """
        Serializes the trace with the camelCase keys of the external trace document.

        Only the trace's own keys are converted; outputs and the context snapshot are kept verbatim.
        """
        data = {
            "plan_id": self.plan_id,
            "execution_mode": self.execution_mode.value,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "total_duration_ms": self.total_duration_ms,
            "entries": [entry.to_json_dict() for entry in self.entries],
            "statistics": _camel_case_dict(self.statistics.to_dict()) if self.statistics else None,
            "context_snapshot": self.context_snapshot,
        }
        return _camel_case_dict(data)


# ============================================================================
# Validation results
# ============================================================================


@dataclass
class ValidationIssue(JsonSerializable):
    path: str
    message: str

    def __str__(self):
        return f"{self.path}: {self.message}" if self.path else self.message


@dataclass
class ValidationResult(JsonSerializable):
    success: bool
    errors: Optional[list[ValidationIssue]] = None
    warnings: Optional[list[ValidationIssue]] = None

    @classmethod
    def from_issues(
        cls, errors: list[ValidationIssue], warnings: Optional[list[ValidationIssue]] = None
    ) -> ValidationResult:
        return cls(success=not errors, errors=errors or None, warnings=warnings or None)

    def merge(self, other: ValidationResult) -> ValidationResult:
        return ValidationResult.from_issues(
            (self.errors or []) + (other.errors or []), (self.warnings or []) + (other.warnings or [])
        )

    def describe(self) -> str:
        return "; ".join(str(issue) for issue in self.errors or [])
