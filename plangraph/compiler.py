import logging
from typing import Any, Optional, Union

from typing_extensions import assert_never

from plangraph.context import evaluate_condition, resolve_path, set_path, substitute_vars
from plangraph.entities import (
    ConditionalStep,
    FinalStep,
    GraphNode,
    LoopStep,
    NodeMetadata,
    ParallelStep,
    Plan,
    PlanStep,
    ReduceStep,
    ToolStep,
)
from plangraph.errors import CompilationError
from plangraph.tools import Tool, ToolRegistry
from plangraph.utils import map_bounded, maybe_await

logger = logging.getLogger(__name__)


def merge_dependencies(inherited: list[str], declared: list[str]) -> list[str]:
    """Union of inherited and declared dependencies, de-duplicated, first occurrence order kept."""
    return list(dict.fromkeys([*inherited, *declared]))


def _bind(context: dict, name: str, value: Any) -> dict:
    return {**context, name: value}


class PlanCompiler:
    """
    Expands the step tree of a plan into a flat list of independently schedulable graph nodes.

    Every node function takes the live context, performs its unit of work and writes its result back
    into the context. Dependencies on compound steps (loop, parallel) are rewritten to the node IDs
    that represent those steps, so every dependency of a valid plan names a node of the same graph.
    """

    def __init__(self, tools: ToolRegistry, node_schemas: Optional[dict[str, type]] = None):
        self.tools = tools
        self.node_schemas = node_schemas or {}

    def compile(
        self, plan: Union[Plan, list[PlanStep]], context: dict, inherited_deps: Optional[list[str]] = None
    ) -> list[GraphNode]:
        """
        Compiles a plan (or a list of steps) into graph nodes.

        :param plan: The plan or the steps to compile.
        :param context: The context as known at compile time; used to decide static loop expansion.
        :param inherited_deps: Dependencies every produced node inherits.
        :return: The compiled nodes, in compile order.
        """
        steps = plan.steps if isinstance(plan, Plan) else plan
        nodes: list[GraphNode] = []
        aliases: dict[str, list[str]] = {}

        for step in steps:
            self._compile_step(step, list(inherited_deps or []), context, nodes, aliases)

        self._resolve_aliases(nodes, aliases)

        logger.debug(f"Compiled {len(steps)} steps into {len(nodes)} nodes")
        return nodes

    def _compile_step(
        self, step: PlanStep, inherited_deps: list[str], context: dict, nodes: list[GraphNode], aliases: dict
    ) -> list[str]:
        deps = merge_dependencies(inherited_deps, step.depends_on)

        if isinstance(step, ToolStep):
            node_ids = [self._add_tool_node(step, deps, nodes)]
        elif isinstance(step, LoopStep):
            node_ids = self._add_loop_nodes(step, deps, context, nodes)
        elif isinstance(step, ParallelStep):
            node_ids = self._add_parallel_nodes(step, deps, context, nodes, aliases)
        elif isinstance(step, ReduceStep):
            node_ids = [self._add_reduce_node(step, deps, nodes)]
        elif isinstance(step, ConditionalStep):
            node_ids = [self._add_conditional_node(step, deps, nodes)]
        elif isinstance(step, FinalStep):
            node_ids = [self._add_final_node(step, deps, nodes)]
        else:
            assert_never(step)

        aliases[step.id] = node_ids
        return node_ids

    @staticmethod
    def _resolve_aliases(nodes: list[GraphNode], aliases: dict[str, list[str]]) -> None:
        node_ids = {node.id for node in nodes}

        for node in nodes:
            resolved = []
            for dep in node.deps:
                if dep in node_ids or dep not in aliases:
                    resolved.append(dep)
                else:
                    resolved.extend(aliases[dep])
            node.deps = list(dict.fromkeys(resolved))

    def _get_tool(self, tool_name: str, kind: str = "tool") -> Tool:
        if tool := self.tools.get(tool_name):
            return tool
        raise CompilationError(f"Unknown {kind}: {tool_name}")

    def _append(self, nodes: list[GraphNode], node: GraphNode) -> str:
        node.metadata.input_schema = self.node_schemas.get(node.id) or self.node_schemas.get(
            node.metadata.original_step_id
        )
        nodes.append(node)
        return node.id

    def _add_tool_node(
        self,
        step: ToolStep,
        deps: list[str],
        nodes: list[GraphNode],
        node_id: Optional[str] = None,
        binding: Optional[tuple[str, Any]] = None,
        loop_index: Optional[int] = None,
        original_step_id: Optional[str] = None,
        overrides: Optional[PlanStep] = None,
    ) -> str:
        tool = self._get_tool(step.tool)
        node_id = node_id or step.id
        output_path = node_id if binding else (step.output or step.id)

        async def fn(context: dict) -> Any:
            scope = _bind(context, *binding) if binding else context
            params = substitute_vars(step.input, scope)
            result = await tool.invoke(params, scope)
            set_path(context, output_path, result)
            return result

        overrides = overrides or step
        return self._append(
            nodes,
            GraphNode(
                id=node_id,
                fn=fn,
                deps=deps,
                metadata=NodeMetadata(
                    original_step_id=original_step_id or step.id,
                    tool_name=step.tool,
                    loop_index=loop_index,
                    output_path=output_path,
                    timeout_ms=step.timeout_ms if step.timeout_ms is not None else overrides.timeout_ms,
                    max_retries=step.retry_count if step.retry_count is not None else overrides.retry_count,
                ),
            ),
        )

    def _add_loop_nodes(self, step: LoopStep, deps: list[str], context: dict, nodes: list[GraphNode]) -> list[str]:
        if not isinstance(step.step, ToolStep):
            raise CompilationError(f"Loop step '{step.id}' must wrap a tool step")

        items = resolve_path(context, step.over)
        if isinstance(items, list):
            return self._add_static_loop_nodes(step, items, deps, nodes)
        return [self._add_dynamic_loop_node(step, deps, nodes)]

    def _add_static_loop_nodes(
        self, step: LoopStep, items: list, deps: list[str], nodes: list[GraphNode]
    ) -> list[str]:
        iteration_ids = []

        for idx, item in enumerate(items):
            iteration_ids.append(
                self._add_tool_node(
                    step.step,
                    deps,
                    nodes,
                    node_id=f"{step.id}_iter_{idx}",
                    binding=(step.as_, item),
                    loop_index=idx,
                    original_step_id=step.id,
                    overrides=step,
                )
            )

        aggregate_id = step.output or f"{step.id}_agg"

        async def aggregate(context: dict) -> list:
            # read back by index so results keep input order
            results = [resolve_path(context, iteration_id) for iteration_id in iteration_ids]
            set_path(context, aggregate_id, results)
            return results

        return [
            self._append(
                nodes,
                GraphNode(
                    id=aggregate_id,
                    fn=aggregate,
                    deps=iteration_ids or deps,
                    metadata=NodeMetadata(original_step_id=step.id, output_path=aggregate_id),
                ),
            )
        ]

    def _add_dynamic_loop_node(self, step: LoopStep, deps: list[str], nodes: list[GraphNode]) -> str:
        inner = step.step
        tool = self._get_tool(inner.tool)
        output_path = step.output or step.id

        async def run_loop(context: dict) -> list:
            items = resolve_path(context, step.over)
            if not isinstance(items, list):
                raise CompilationError(f"Loop source {step.over} is not an array")

            async def run_item(item: Any) -> Any:
                scope = _bind(context, step.as_, item)
                return await tool.invoke(substitute_vars(inner.input, scope), scope)

            results = await map_bounded(items, run_item, step.concurrency or 1)
            set_path(context, output_path, results)
            return results

        return self._append(
            nodes,
            GraphNode(
                id=f"{step.id}_dynamic",
                fn=run_loop,
                deps=deps,
                metadata=NodeMetadata(
                    original_step_id=step.id,
                    tool_name=inner.tool,
                    output_path=output_path,
                    timeout_ms=step.timeout_ms,
                    max_retries=step.retry_count,
                ),
            ),
        )

    def _add_parallel_nodes(
        self, step: ParallelStep, deps: list[str], context: dict, nodes: list[GraphNode], aliases: dict
    ) -> list[str]:
        child_ids = []
        for child in step.steps:
            child_ids.extend(self._compile_step(child, deps, context, nodes, aliases))

        if not step.output:
            return child_ids

        output_paths = {node.id: node.metadata.output_path or node.id for node in nodes if node.id in child_ids}
        aggregate_id = step.output

        async def aggregate(context: dict) -> dict:
            results = {child_id: resolve_path(context, output_paths[child_id]) for child_id in child_ids}
            set_path(context, aggregate_id, results)
            return results

        return [
            self._append(
                nodes,
                GraphNode(
                    id=aggregate_id,
                    fn=aggregate,
                    deps=child_ids or deps,
                    metadata=NodeMetadata(original_step_id=step.id, output_path=aggregate_id),
                ),
            )
        ]

    def _add_reduce_node(self, step: ReduceStep, deps: list[str], nodes: list[GraphNode]) -> str:
        if isinstance(step.reducer, str):
            tool = self._get_tool(step.reducer, kind="reducer tool")
            reducer_input = None
        else:
            tool = self._get_tool(step.reducer.tool, kind="reducer tool")
            reducer_input = step.reducer.input

        async def run_reduce(context: dict) -> list:
            items = resolve_path(context, step.input)
            if not isinstance(items, list):
                raise CompilationError(f"Reduce input {step.input} is not an array")

            results = []
            for item in items:
                scope = _bind(context, step.as_, item)
                params = {"item": item} if reducer_input is None else substitute_vars(reducer_input, scope)
                results.append(await tool.invoke(params, scope))

            set_path(context, step.output, results)
            return results

        return self._append(
            nodes,
            GraphNode(
                id=step.id,
                fn=run_reduce,
                deps=deps,
                metadata=NodeMetadata(
                    original_step_id=step.id,
                    tool_name=tool.id,
                    output_path=step.output,
                    timeout_ms=step.timeout_ms,
                    max_retries=step.retry_count,
                ),
            ),
        )

    def _add_conditional_node(self, step: ConditionalStep, deps: list[str], nodes: list[GraphNode]) -> str:
        async def run_branch(context: dict) -> dict:
            chosen = evaluate_condition(step.condition, context)
            branch_name = "then" if chosen else "otherwise"
            logger.debug(f"Condition of step {step.id} selected the '{branch_name}' branch")

            # branch steps run inline and in order, outside the scheduler
            results = {}
            for branch_node in self.compile(step.then if chosen else step.otherwise, context):
                results[branch_node.id] = await maybe_await(branch_node.fn(context))
                branch_node.executed = True

            return {"branch": branch_name, "results": results}

        return self._append(
            nodes,
            GraphNode(
                id=step.id,
                fn=run_branch,
                deps=deps,
                metadata=NodeMetadata(
                    original_step_id=step.id, timeout_ms=step.timeout_ms, max_retries=step.retry_count
                ),
            ),
        )

    def _add_final_node(self, step: FinalStep, deps: list[str], nodes: list[GraphNode]) -> str:
        tool = self._get_tool(step.function, kind="final function") if step.function else None
        output_path = step.output or step.id

        async def run_final(context: dict) -> Any:
            if tool is None:
                return None

            params = substitute_vars(step.input or {}, context)
            result = await tool.invoke(params, context)
            set_path(context, output_path, result)
            return result

        return self._append(
            nodes,
            GraphNode(
                id=step.id,
                fn=run_final,
                deps=deps,
                metadata=NodeMetadata(
                    original_step_id=step.id,
                    tool_name=step.function,
                    output_path=output_path,
                    timeout_ms=step.timeout_ms,
                    max_retries=step.retry_count,
                ),
            ),
        )
