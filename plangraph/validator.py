import logging
from collections.abc import Mapping
from typing import Any, Optional, Union

from plangraph.entities import (
    ExecutionMode,
    FinalStep,
    Plan,
    PlanStep,
    ReduceStep,
    StepType,
    ToolStep,
    ValidationIssue,
    ValidationResult,
    step_type_of,
)
from plangraph.tools import ToolRegistry

logger = logging.getLogger(__name__)

SUPPORTED_VERSION = "1.0"
EXECUTION_MODES = {mode.value for mode in ExecutionMode}


def _is_non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and len(value) > 0


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class _StructureChecker:
    """Walks a raw plan mapping and collects structural issues."""

    def __init__(self):
        self.errors: list[ValidationIssue] = []
        self.seen_ids: set[str] = set()

    def error(self, path: str, message: str) -> None:
        self.errors.append(ValidationIssue(path=path, message=message))

    def require_string(self, step: Mapping, key: str, path: str, message: str) -> None:
        if not _is_non_empty_string(step.get(key)):
            self.error(f"{path}.{key}", message)

    def optional_string(self, step: Mapping, key: str, path: str) -> None:
        if step.get(key) is not None and not isinstance(step[key], str):
            self.error(f"{path}.{key}", "Expected string")

    def optional_mapping(self, step: Mapping, key: str, path: str) -> None:
        if step.get(key) is not None and not isinstance(step[key], Mapping):
            self.error(f"{path}.{key}", "Expected object")

    def check_range(self, step: Mapping, key: str, path: str, minimum: int, maximum: Optional[int] = None) -> None:
        value = step.get(key)
        if value is None:
            return
        if not _is_number(value):
            self.error(f"{path}.{key}", "Expected number")
        elif value < minimum:
            self.error(f"{path}.{key}", f"Number must be greater than or equal to {minimum}")
        elif maximum is not None and value > maximum:
            self.error(f"{path}.{key}", f"Number must be less than or equal to {maximum}")

    def check_step_list(self, steps: Any, path: str, allow_empty: bool = False) -> None:
        if not isinstance(steps, list):
            self.error(path, "Expected array")
            return
        if not steps and not allow_empty:
            self.error(path, "At least one step is required")
        for idx, step in enumerate(steps):
            self.check_step(step, f"{path}.{idx}")

    def check_step(self, step: Any, path: str, require_id: bool = True) -> None:
        if not isinstance(step, Mapping):
            self.error(path, "Step must be an object")
            return

        step_id = step.get("id")
        if require_id:
            if not _is_non_empty_string(step_id):
                self.error(f"{path}.id", "Step ID is required")
            elif step_id in self.seen_ids:
                self.error(f"{path}.id", f"Duplicate step ID '{step_id}'")
            else:
                self.seen_ids.add(step_id)

        depends_on = step.get("depends_on")
        if depends_on is not None and (
            not isinstance(depends_on, list) or not all(isinstance(dep, str) for dep in depends_on)
        ):
            self.error(f"{path}.depends_on", "Expected array of step IDs")

        self.check_range(step, "timeout_ms", path, 0)
        self.check_range(step, "retry_count", path, 0, 5)
        self.optional_string(step, "description", path)

        step_type = step_type_of(step)
        if step_type is None:
            self.error(f"{path}.type", f"Unknown step type: {step.get('type')!r}")
            return

        if step_type is StepType.TOOL:
            self.require_string(step, "tool", path, "Tool name is required")
            self.optional_mapping(step, "input", path)
            self.optional_string(step, "output", path)
        elif step_type is StepType.LOOP:
            self.require_string(step, "over", path, "Loop source path is required")
            self.require_string(step, "as", path, "Loop variable name is required")
            self.optional_string(step, "output", path)
            self.check_range(step, "concurrency", path, 1, 10)
            inner = step.get("step")
            if isinstance(inner, Mapping) and step_type_of(inner) is not StepType.TOOL:
                self.error(f"{path}.step", "Loop inner step must be a tool step")
            else:
                self.check_step(inner, f"{path}.step", require_id=False)
        elif step_type is StepType.PARALLEL:
            self.check_step_list(step.get("steps"), f"{path}.steps")
            self.optional_string(step, "output", path)
        elif step_type is StepType.REDUCE:
            self.require_string(step, "input", path, "Reduce input path is required")
            self.require_string(step, "as", path, "Item variable name is required")
            self.require_string(step, "output", path, "Reduce output name is required")
            reducer = step.get("reducer")
            if isinstance(reducer, Mapping):
                if step_type_of(reducer) is not StepType.TOOL:
                    self.error(f"{path}.reducer", "Reducer must be a tool name or a tool step")
                else:
                    self.check_step(reducer, f"{path}.reducer", require_id=False)
            elif not _is_non_empty_string(reducer):
                self.error(f"{path}.reducer", "Reducer must be a tool name or a tool step")
        elif step_type is StepType.CONDITIONAL:
            self.require_string(step, "condition", path, "Condition expression is required")
            self.check_step_list(step.get("then"), f"{path}.then")
            if step.get("otherwise") is not None:
                self.check_step_list(step["otherwise"], f"{path}.otherwise", allow_empty=True)
        elif step_type is StepType.FINAL:
            self.optional_string(step, "function", path)
            self.optional_mapping(step, "input", path)
            self.optional_string(step, "output", path)


def validate_plan(plan: Union[Plan, Mapping]) -> ValidationResult:
    """
    Checks the structure of a plan document.

    Verifies the version and execution mode, that there is at least one step, that every step carries the
    fields its type requires, that numeric options are in range and that step IDs are unique across the
    whole plan, nested steps included.

    :param plan: A raw plan mapping or a parsed :class:`Plan`.
    :return: The validation result; validation failures are never raised.
    """
    data = plan.to_dict() if isinstance(plan, Plan) else plan
    checker = _StructureChecker()

    if not isinstance(data, Mapping):
        checker.error("", "Plan must be an object")
        return ValidationResult.from_issues(checker.errors)

    version = data.get("version", SUPPORTED_VERSION)
    if version != SUPPORTED_VERSION:
        checker.error("version", f'Invalid literal value, expected "{SUPPORTED_VERSION}"')

    execution = data.get("execution", ExecutionMode.SEQUENTIAL.value)
    if str(execution) not in EXECUTION_MODES:
        checker.error("execution", f"Invalid enum value. Expected one of {sorted(EXECUTION_MODES)}")

    checker.check_step_list(data.get("steps"), "steps")

    return ValidationResult.from_issues(checker.errors)


def _step_id(step: Union[PlanStep, Mapping]) -> Optional[str]:
    return step.get("id") if isinstance(step, Mapping) else step.id


def _step_dependencies(step: Union[PlanStep, Mapping]) -> list[str]:
    deps = step.get("depends_on") if isinstance(step, Mapping) else step.depends_on
    return list(deps or [])


def validate_dependencies(steps: list[Union[PlanStep, Mapping]]) -> ValidationResult:
    """
    Checks the ``depends_on`` references of the top-level steps.

    Every referenced step must exist, and no step may be reachable from itself through ``depends_on``
    edges, whatever the length of the cycle.

    :param steps: The top-level steps of the plan.
    :return: The validation result.
    """
    errors = []
    dependencies = {_step_id(step): _step_dependencies(step) for step in steps}

    for step_id, deps in dependencies.items():
        for dep_id in deps:
            if dep_id not in dependencies:
                errors.append(
                    ValidationIssue(path=f"steps.{step_id}.depends_on", message=f"Dependency '{dep_id}' does not exist")
                )

    visited = set()
    in_stack = set()

    def has_cycle(step_id: str) -> bool:
        if step_id in in_stack:
            return True
        if step_id in visited:
            return False

        visited.add(step_id)
        in_stack.add(step_id)

        for dep_id in dependencies.get(step_id, []):
            if has_cycle(dep_id):
                # the stack is left as-is so every step on the cycle gets reported
                return True

        in_stack.discard(step_id)
        return False

    for step_id in dependencies:
        if has_cycle(step_id):
            errors.append(
                ValidationIssue(
                    path=f"steps.{step_id}", message=f"Circular dependency detected involving step '{step_id}'"
                )
            )

    return ValidationResult.from_issues(errors)


class PlanValidator:
    """
    Runs every pre-execution check on a plan: structure, dependencies and, when a registry is given,
    the existence of every referenced tool.
    """

    def __init__(self, tools: Optional[ToolRegistry] = None):
        self.tools = tools

    def validate(self, plan: Union[Plan, Mapping]) -> ValidationResult:
        result = validate_plan(plan)
        if not result.success:
            return result

        parsed = plan if isinstance(plan, Plan) else Plan.from_dict(dict(plan))
        result = result.merge(validate_dependencies(parsed.steps))

        if self.tools is not None:
            result = result.merge(self.validate_tools(parsed))

        if not result.success:
            logger.debug(f"Plan validation failed: {result.describe()}")
        return result

    def validate_tools(self, plan: Plan) -> ValidationResult:
        errors = []

        def check(tool_name: Optional[str], path: str) -> None:
            if tool_name and not self.tools.has(tool_name):
                errors.append(ValidationIssue(path=path, message=f"Unknown tool: {tool_name}"))

        for step in plan.iter_steps():
            if isinstance(step, ToolStep):
                check(step.tool, f"steps.{step.id}.tool")
            elif isinstance(step, ReduceStep) and isinstance(step.reducer, str):
                check(step.reducer, f"steps.{step.id}.reducer")
            elif isinstance(step, FinalStep):
                check(step.function, f"steps.{step.id}.function")

        return ValidationResult.from_issues(errors)
