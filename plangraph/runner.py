import asyncio
import time
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError

from plangraph.config import ExecutionOptions
from plangraph.entities import ExecutionTrace, GraphNode, TraceEntry, TraceStatus
from plangraph.errors import CompilationError, NodeExecutionError, NodeTimeoutError, format_error
from plangraph.logger_setup import get_logger
from plangraph.utils import maybe_await, utc_now_iso

BASE_BACKOFF_SECONDS = 0.1


def backoff_seconds(attempt: int) -> float:
    """Delay before retrying after the given failed attempt (1-based): 100ms, 200ms, 400ms, ..."""
    return BASE_BACKOFF_SECONDS * 2 ** (attempt - 1)


async def with_timeout(fn: Callable[[], Awaitable[Any]], timeout_ms: Optional[float], message: str) -> Any:
    """
    Races ``fn`` against a timer.

    :param fn: Zero-argument coroutine function to run.
    :param timeout_ms: Timeout in milliseconds; ``None`` or 0 disables the timer.
    :param message: Message of the :class:`NodeTimeoutError` raised when the timer wins.
    :return: The result of ``fn``.
    """
    if not timeout_ms:
        return await fn()
    try:
        return await asyncio.wait_for(fn(), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError:
        raise NodeTimeoutError(message)


async def measure_time(fn: Callable[[], Awaitable[Any]]) -> tuple[Any, float]:
    start = time.monotonic()
    result = await fn()
    return result, (time.monotonic() - start) * 1000


def is_cancelled(signal: Any) -> bool:
    """Checks a cooperative cancellation signal: anything with ``is_set()`` or an ``aborted`` flag."""
    if signal is None:
        return False
    if hasattr(signal, "is_set"):
        return signal.is_set()
    return bool(getattr(signal, "aborted", False))


class NodeRunner:
    """
    Executes one graph node: input check, timeout, retries with exponential backoff and trace bookkeeping.

    Cancellation is cooperative and coarse-grained: the signal is only looked at before each attempt, so a
    tool call that is already running is never interrupted.
    """

    def __init__(self, options: ExecutionOptions):
        self.options = options
        self.logger = get_logger("plangraph.runner")

    async def _notify(self, callback: Optional[Callable], *args) -> None:
        # observer errors never change a node's outcome
        if callback is None:
            return
        try:
            await maybe_await(callback(*args))
        except Exception as e:
            self.logger.error(f"Callback {getattr(callback, '__name__', callback)!r} failed for node {args[0]}: {e}")

    def _validate_input(self, node: GraphNode, context: dict) -> None:
        schema = node.metadata.input_schema
        if schema is None:
            return
        try:
            schema.model_validate(context)
        except ValidationError as e:
            raise ValueError(f"Input validation failed for node {node.id}: {e}") from e

    async def run_node(self, node: GraphNode, context: dict, trace: ExecutionTrace) -> Any:
        """
        Runs a node until it succeeds, is cancelled, or exhausts its attempts.

        :param node: The node to run; it is marked executed whatever the outcome.
        :param context: The shared context.
        :param trace: The trace the node's entry is appended to.
        :return: The node's result, or None if it was cancelled.
        :raises NodeExecutionError: Once every attempt has failed.
        """
        entry = TraceEntry(
            node_id=node.id,
            step_id=node.metadata.original_step_id,
            status=TraceStatus.RUNNING,
            start_time=utc_now_iso(),
            tool_name=node.metadata.tool_name,
        )
        trace.entries.append(entry)
        await self._notify(self.options.on_node_start, node.id)

        max_retries = node.metadata.max_retries
        if max_retries is None:
            max_retries = self.options.max_retries
        timeout_ms = node.metadata.timeout_ms
        if timeout_ms is None:
            timeout_ms = self.options.default_timeout_ms

        attempt = 0
        while True:
            if is_cancelled(self.options.cancellation_signal):
                self.logger.info(f"Node {node.id} cancelled before attempt {attempt + 1}")
                entry.status = TraceStatus.CANCELLED
                entry.end_time = utc_now_iso()
                entry.retry_count = attempt
                node.executed = True
                return None

            try:
                self._validate_input(node, context)
                result, duration_ms = await measure_time(
                    lambda: with_timeout(
                        lambda: maybe_await(node.fn(context)),
                        timeout_ms,
                        f"Node {node.id} timed out after {timeout_ms}ms",
                    )
                )
            except Exception as e:
                attempt += 1
                error_message = format_error(e)
                self.logger.warning(f"Node {node.id} failed (attempt {attempt}/{max_retries + 1}): {error_message}")

                if attempt <= max_retries and not isinstance(e, CompilationError):
                    await asyncio.sleep(backoff_seconds(attempt))
                    continue

                entry.status = TraceStatus.FAILED
                entry.end_time = utc_now_iso()
                entry.error = error_message
                entry.retry_count = attempt - 1
                node.executed = True

                await self._notify(self.options.on_node_error, node.id, error_message)
                raise NodeExecutionError(
                    node.id, cause=e, step_id=node.metadata.original_step_id, tool_name=node.metadata.tool_name
                ) from e

            entry.status = TraceStatus.SUCCESS
            entry.end_time = utc_now_iso()
            entry.duration_ms = duration_ms
            entry.output = result
            entry.retry_count = attempt
            node.executed = True

            await self._notify(self.options.on_node_complete, node.id, result)
            return result
