import time
from collections.abc import Mapping
from typing import Any, Optional, Union

from plangraph.compiler import PlanCompiler
from plangraph.config import ExecutionOptions, load_plan
from plangraph.context import deep_clone
from plangraph.dependency_analyzer import DependencyAnalyzer
from plangraph.entities import ExecutionTrace, Plan, TraceStatistics, ValidationResult
from plangraph.errors import NodeExecutionError, PlanGraphError, PlanValidationError
from plangraph.logger_setup import get_logger
from plangraph.runner import NodeRunner
from plangraph.scheduler import GraphScheduler
from plangraph.tools import ToolLike, ToolRegistry, ensure_registry
from plangraph.utils import generate_id, utc_now_iso
from plangraph.validator import PlanValidator, validate_dependencies, validate_plan

ToolsArg = Union[ToolRegistry, dict[str, ToolLike], list[ToolLike], None]


class DynamicGraphExecutor:
    """
    Validates, compiles and runs a plan as a dependency graph.

    Each call to :meth:`run` works on a deep copy of the initial context and builds a fresh compiler,
    runner and scheduler, so one executor can serve concurrent runs.
    """

    def __init__(self, tools: ToolsArg = None, node_schemas: Optional[dict[str, type]] = None):
        self.tools = ensure_registry(tools)
        self.node_schemas = node_schemas or {}
        self.logger = get_logger("plangraph.executor")

    @classmethod
    def create(cls, tools: ToolsArg = None, node_schemas: Optional[dict[str, type]] = None) -> "DynamicGraphExecutor":
        return cls(tools=tools, node_schemas=node_schemas)

    @staticmethod
    def _check(plan: Union[Plan, Mapping]) -> Plan:
        structure = validate_plan(plan)
        if not structure.success:
            raise PlanValidationError(f"Invalid plan:\n{structure.describe()}", errors=structure.errors)

        plan = load_plan(plan)
        dependencies = validate_dependencies(plan.steps)
        if not dependencies.success:
            raise PlanValidationError(
                f"Invalid plan dependencies:\n{dependencies.describe()}", errors=dependencies.errors
            )
        return plan

    async def run(
        self,
        plan: Union[Plan, Mapping],
        initial_context: Optional[dict] = None,
        options: Optional[ExecutionOptions] = None,
        **overrides: Any,
    ) -> tuple[dict, ExecutionTrace]:
        """
        Runs a plan to completion.

        :param plan: The plan, parsed or as a raw mapping.
        :param initial_context: The caller's context; it is deep-copied and never mutated.
        :param options: Run options; keyword ``overrides`` replace individual fields.
        :return: The final context and the execution trace.
        :raises PlanValidationError: If the plan is invalid; nothing has run.
        :raises CompilationError: If a step references an unknown tool.
        :raises DeadlockError: If the graph can never complete.
        :raises NodeExecutionError: If a node failed on every attempt; ``trace`` and ``context`` are attached.
        """
        options = options or ExecutionOptions()
        if overrides:
            options = options.with_overrides(**overrides)

        plan = self._check(plan)

        trace = ExecutionTrace(
            plan_id=options.plan_id or generate_id("plan"),
            execution_mode=plan.execution,
            started_at=utc_now_iso(),
        )
        context = deep_clone(initial_context or {})
        start = time.monotonic()

        self.logger.info(f"Starting plan {trace.plan_id} with {len(plan.steps)} steps")

        try:
            nodes = PlanCompiler(self.tools, self.node_schemas).compile(plan, context)
            self.logger.debug(f"Graph of plan {trace.plan_id} has {len(nodes)} nodes")

            scheduler = GraphScheduler(NodeRunner(options))
            scheduler.add_nodes(nodes)
            await scheduler.run(context, options, trace)
        except PlanGraphError as e:
            self.logger.error(f"Plan {trace.plan_id} failed: {e}")
            if isinstance(e, NodeExecutionError):
                e.trace = trace
                e.context = context
            raise
        finally:
            self._finish(trace, context, options, start)

        self.logger.info(
            f"Finished plan {trace.plan_id} in {trace.total_duration_ms:.0f}ms "
            f"({trace.statistics.successful_steps}/{trace.statistics.total_steps} nodes succeeded)"
        )
        return context, trace

    @staticmethod
    def _finish(trace: ExecutionTrace, context: dict, options: ExecutionOptions, start: float) -> None:
        trace.finished_at = utc_now_iso()
        trace.total_duration_ms = (time.monotonic() - start) * 1000
        trace.statistics = TraceStatistics.from_entries(trace.entries)
        if options.enable_trace:
            trace.context_snapshot = deep_clone(context)


class PlanExecutor:
    """
    Convenience facade bundling a tool registry with validation, layer preview and execution.
    """

    def __init__(self, tools: ToolsArg = None, node_schemas: Optional[dict[str, type]] = None):
        self.tools = ensure_registry(tools)
        self.node_schemas = node_schemas or {}

    def validate(self, plan: Union[Plan, Mapping]) -> ValidationResult:
        return PlanValidator(self.tools).validate(plan)

    def preview_layers(self, plan: Union[Plan, Mapping], context: Optional[dict] = None) -> list[list[str]]:
        """
        Compiles a plan without running it and returns the wavefronts the scheduler would run.

        Dynamic loops and conditionals count as single nodes, as they do at run time.
        """
        plan = DynamicGraphExecutor._check(plan)
        nodes = PlanCompiler(self.tools, self.node_schemas).compile(plan, deep_clone(context or {}))
        return DependencyAnalyzer.find_parallel_groups(nodes)

    async def execute(
        self,
        plan: Union[Plan, Mapping],
        context: Optional[dict] = None,
        options: Optional[ExecutionOptions] = None,
        **overrides: Any,
    ) -> tuple[dict, ExecutionTrace]:
        executor = DynamicGraphExecutor(self.tools, self.node_schemas)
        return await executor.run(plan, context, options, **overrides)

    def update_tools(self, tools: ToolsArg) -> None:
        self.tools = ensure_registry(tools)


def create_graph_executor(tools: ToolsArg = None, node_schemas: Optional[dict[str, type]] = None) -> DynamicGraphExecutor:
    return DynamicGraphExecutor.create(tools, node_schemas)


def create_plan_executor(tools: ToolsArg = None, node_schemas: Optional[dict[str, type]] = None) -> PlanExecutor:
    return PlanExecutor(tools, node_schemas)
