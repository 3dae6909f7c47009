from importlib.metadata import version

from .compiler import PlanCompiler
from .config import EngineConfig, ExecutionOptions, load_config_from_yaml, load_plan
from .context import deep_clone, evaluate_condition, resolve_path, set_path, substitute_vars
from .dependency_analyzer import DependencyAnalyzer
from .entities import (
    ConditionalStep,
    ExecutionMode,
    ExecutionTrace,
    FinalStep,
    GraphNode,
    LoopStep,
    ParallelStep,
    Plan,
    ReduceStep,
    ToolStep,
    TraceEntry,
    TraceStatus,
    ValidationResult,
)
from .errors import (
    CompilationError,
    ConfigurationError,
    DeadlockError,
    NodeExecutionError,
    NodeTimeoutError,
    PlanGraphError,
    PlanValidationError,
)
from .executor import DynamicGraphExecutor, PlanExecutor, create_graph_executor, create_plan_executor
from .runner import NodeRunner
from .scheduler import GraphScheduler
from .summary import render_trace_summary
from .tools import Tool, ToolRegistry, load_tools, tool
from .validator import PlanValidator, validate_dependencies, validate_plan

__version__ = version("plangraph")

__all__ = [
    "__version__",
    "DynamicGraphExecutor",
    "PlanExecutor",
    "create_graph_executor",
    "create_plan_executor",
    "ExecutionOptions",
    "EngineConfig",
    "load_config_from_yaml",
    "load_plan",
    "Plan",
    "ToolStep",
    "LoopStep",
    "ParallelStep",
    "ReduceStep",
    "ConditionalStep",
    "FinalStep",
    "ExecutionMode",
    "ExecutionTrace",
    "TraceEntry",
    "TraceStatus",
    "ValidationResult",
    "GraphNode",
    "Tool",
    "ToolRegistry",
    "tool",
    "load_tools",
    "PlanValidator",
    "validate_plan",
    "validate_dependencies",
    "PlanCompiler",
    "GraphScheduler",
    "NodeRunner",
    "DependencyAnalyzer",
    "render_trace_summary",
    "resolve_path",
    "set_path",
    "deep_clone",
    "substitute_vars",
    "evaluate_condition",
    "PlanGraphError",
    "ConfigurationError",
    "PlanValidationError",
    "CompilationError",
    "NodeExecutionError",
    "NodeTimeoutError",
    "DeadlockError",
]
