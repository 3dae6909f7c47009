from typing import Any, Optional


class PlanGraphError(Exception):
    """Base class of every error raised by the engine."""


class ConfigurationError(PlanGraphError):
    """Raised for out-of-range execution options or unreadable configuration files."""


class PlanValidationError(PlanGraphError):
    """Raised when a plan fails structural or dependency validation, before anything runs."""

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message)
        self.errors = errors or []


class CompilationError(PlanGraphError):
    """Raised when a step cannot be turned into graph nodes (unknown tool, duplicate node id, ...)."""


class NodeTimeoutError(PlanGraphError):
    """Raised when a single attempt of a node exceeds its timeout."""


class DeadlockError(PlanGraphError):
    """Raised when no node is ready but some nodes have not executed yet."""

    def __init__(self, node_ids: list[str], cycles: Optional[list[list[str]]] = None):
        message = f"Deadlock detected. Unexecuted nodes: {', '.join(node_ids)}"
        for cycle in cycles or []:
            message += f"\nCycle: {' -> '.join(cycle + cycle[:1])}"
        super().__init__(message)
        self.node_ids = node_ids
        self.cycles = cycles or []


class NodeExecutionError(PlanGraphError):
    """
    Raised once a node has failed on every attempt.

    The executor attaches the finished ``trace`` and the mutated ``context`` before re-raising,
    so callers get both the diagnosis and the control-flow signal from a single call.
    """

    def __init__(
        self,
        node_id: str,
        cause: Optional[BaseException] = None,
        step_id: Optional[str] = None,
        tool_name: Optional[str] = None,
    ):
        super().__init__(
            create_detailed_error(
                f"Node execution failed: {node_id}", step_id=step_id, tool_name=tool_name, error=cause
            )
        )
        self.node_id = node_id
        self.step_id = step_id
        self.tool_name = tool_name
        self.cause = cause
        self.trace = None
        self.context = None


def format_error(error: Any) -> str:
    if isinstance(error, BaseException):
        return str(error) or error.__class__.__name__
    if isinstance(error, str):
        return error
    return str(error)


def create_detailed_error(
    message: str, step_id: Optional[str] = None, tool_name: Optional[str] = None, error: Any = None
) -> str:
    """
    Builds a multi-line error message listing the step, tool and underlying error when known.

    :param message: The headline of the message.
    :param step_id: The original step the failing node was compiled from.
    :param tool_name: The tool the node called.
    :param error: The underlying exception or message.
    :return: The assembled message.
    """
    parts = [message]

    if step_id:
        parts.append(f"Step: {step_id}")
    if tool_name:
        parts.append(f"Tool: {tool_name}")
    if error:
        parts.append(f"Error: {format_error(error)}")

    return "\n".join(parts)
