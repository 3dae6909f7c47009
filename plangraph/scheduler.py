import asyncio
from collections import deque
from typing import Optional

from plangraph.config import ExecutionOptions
from plangraph.dependency_analyzer import DependencyAnalyzer
from plangraph.entities import ExecutionMode, ExecutionTrace, GraphNode
from plangraph.errors import CompilationError, DeadlockError, NodeExecutionError
from plangraph.logger_setup import get_logger
from plangraph.runner import NodeRunner
from plangraph.utils import generate_id, utc_now_iso


class GraphScheduler:
    """
    Runs compiled nodes in wavefronts, respecting dependencies and the concurrency bound.

    A node is ready once every dependency has executed, whatever its outcome: failed and cancelled nodes
    unblock their dependents just like successful ones. Every wavefront drains completely before readiness
    is recomputed.
    """

    def __init__(self, runner: NodeRunner):
        self.runner = runner
        self.nodes: dict[str, GraphNode] = {}
        self.logger = get_logger("plangraph.scheduler")

    def add_node(self, node: GraphNode) -> None:
        if node.id in self.nodes:
            raise CompilationError(f"Duplicate node ID: {node.id}")
        self.nodes[node.id] = node

    def add_nodes(self, nodes: list[GraphNode]) -> None:
        for node in nodes:
            self.add_node(node)

    def ready_nodes(self) -> list[GraphNode]:
        return [
            node
            for node in self.nodes.values()
            if not node.executed
            and all(dep in self.nodes and self.nodes[dep].executed for dep in node.deps)
        ]

    def pending_nodes(self) -> list[GraphNode]:
        return [node for node in self.nodes.values() if not node.executed]

    async def _run_batch(
        self, batch: list[GraphNode], context: dict, trace: ExecutionTrace, concurrency: int
    ) -> list[NodeExecutionError]:
        queue = deque(batch)
        failures = []

        async def worker():
            while queue:
                node = queue.popleft()
                try:
                    await self.runner.run_node(node, context, trace)
                except NodeExecutionError as e:
                    failures.append(e)

        workers = [asyncio.create_task(worker()) for _ in range(min(concurrency, len(batch)))]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            # no worker may outlive the batch
            for task in workers:
                task.cancel()
            await asyncio.gather(*workers, return_exceptions=True)
            raise
        return failures

    async def run(
        self, context: dict, options: Optional[ExecutionOptions] = None, trace: Optional[ExecutionTrace] = None
    ) -> dict:
        """
        Runs every added node to completion.

        :param context: The shared context the node functions read and write.
        :param options: Run options; only ``concurrency`` and ``fail_fast`` are used here.
        :param trace: The trace the runner appends entries to; a fresh one is used when omitted.
        :return: The context.
        :raises DeadlockError: If unexecuted nodes remain but none of them is ready.
        :raises NodeExecutionError: The first node failure, once the graph has drained.
        """
        options = options or self.runner.options
        if trace is None:
            trace = ExecutionTrace(plan_id=generate_id("run"), execution_mode=ExecutionMode.DAG, started_at=utc_now_iso())
        failures: list[NodeExecutionError] = []
        wavefront = 0

        while pending := self.pending_nodes():
            ready = self.ready_nodes()
            if not ready:
                raise DeadlockError([node.id for node in pending], DependencyAnalyzer.find_cycles(pending))

            wavefront += 1
            self.logger.debug(f"Wavefront {wavefront}: {', '.join(node.id for node in ready)}")

            batch_failures = await self._run_batch(ready, context, trace, options.concurrency)
            failures.extend(batch_failures)

            if batch_failures and (
                options.fail_fast or any(isinstance(failure.cause, CompilationError) for failure in batch_failures)
            ):
                self.logger.error(f"Stopping after wavefront {wavefront}: {batch_failures[0].node_id} failed")
                raise batch_failures[0]

        if failures:
            raise failures[0]
        return context
