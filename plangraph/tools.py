import inspect
import logging
import re
from dataclasses import dataclass, field
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Union

from asyncer import asyncify

from plangraph.utils import load_module_from_path

logger = logging.getLogger(__name__)


def map_python_type_to_json(python_type: str) -> str:
    type_mapping = {
        "str": "string",
        "int": "integer",
        "float": "number",
        "bool": "boolean",
        "list": "array",
        "dict": "object",
    }
    return type_mapping.get(python_type, "string")


def _accepts_context(func: Callable) -> bool:
    try:
        parameters = list(inspect.signature(func).parameters.values())
    except (TypeError, ValueError):
        return True

    if any(param.kind is inspect.Parameter.VAR_POSITIONAL for param in parameters):
        return True
    positional = [
        param
        for param in parameters
        if param.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    ]
    return len(positional) >= 2


@dataclass
class Tool:
    """
    An external capability the engine calls but does not implement.

    ``execute(params, context)`` may be synchronous or asynchronous. Synchronous callables run in a worker
    thread so they never block the event loop. Tools must not mutate ``context``; the engine owns all
    context writes.
    """

    id: str
    execute: Callable[..., Any]
    name: Optional[str] = None
    description: Optional[str] = None
    input_schema: Optional[dict[str, Any]] = None
    output_schema: Optional[dict[str, Any]] = None
    pass_context: Optional[bool] = field(default=None, repr=False)

    def __post_init__(self):
        if self.pass_context is None:
            self.pass_context = _accepts_context(self.execute)

    async def invoke(self, params: dict[str, Any], context: Optional[dict[str, Any]] = None) -> Any:
        args = (params, context) if self.pass_context else (params,)

        if inspect.iscoroutinefunction(self.execute):
            result = await self.execute(*args)
        else:
            result = await asyncify(self.execute, abandon_on_cancel=True)(*args)

        if inspect.isawaitable(result):
            result = await result
        return result

    @classmethod
    def from_function(cls, func: Callable, tool_id: Optional[str] = None) -> "Tool":
        """
        Wraps a plain function so the step input is passed as keyword arguments.

        Parameters documented as ``[invisible]`` by the :func:`tool` decorator are filled from the
        top-level context keys of the same name instead of the step input.

        :param func: A function, optionally decorated with :func:`tool`.
        :param tool_id: Registry id; defaults to the function name.
        :return: The tool.
        """
        invisible_args = getattr(func, "invisible_args", {}) or {}

        if inspect.iscoroutinefunction(func):

            async def execute(params, context=None):
                hidden = {key: context[key] for key in invisible_args if context and key in context}
                return await func(**{**params, **hidden})

        else:

            def execute(params, context=None):
                hidden = {key: context[key] for key in invisible_args if context and key in context}
                return func(**{**params, **hidden})

        name = getattr(func, "name", func.__name__)
        return cls(
            id=tool_id or name,
            execute=execute,
            name=name,
            description=getattr(func, "description", inspect.getdoc(func) or ""),
            input_schema=getattr(func, "input_schema", None),
            pass_context=True,
        )


def tool(func):
    """
    Marks a function as a tool and extracts its description and parameters from the docstring.

    ``:param name: ...`` lines describe parameters, ``:return: ...`` describes the result. A parameter whose
    description contains ``[invisible]`` is not part of the input schema; it is read from the context.
    """
    docstring = inspect.getdoc(func) or ""

    param_descriptions = {}
    current_param = None
    invisible_params = set()

    param_regex = re.compile(r":param\s+(\w+):\s*(.+)")
    return_regex = re.compile(r":return:\s*(.+)")
    description_lines = []
    return_description = None

    for line in map(str.strip, docstring.splitlines()):
        if param_match := param_regex.match(line):
            current_param, param_description = param_match.groups()
            if "[invisible]" in param_description:
                invisible_params.add(current_param)
                param_description = param_description.replace("[invisible]", "").strip()
            param_descriptions[current_param] = param_description
        elif return_match := return_regex.match(line):
            return_description = return_match.group(1)
        elif current_param:
            param_descriptions[current_param] += f" {line}"
        elif line:
            description_lines.append(line)

    description = " ".join(description_lines)
    if return_description:
        description += f"\nReturns: {return_description}"

    args = {}
    invisible_args = {}
    signature = inspect.signature(func)

    for param_name, param_description in param_descriptions.items():
        annotation = func.__annotations__.get(param_name)
        type_name = getattr(annotation, "__name__", "str")
        arg_description = {
            "title": param_name,
            "type": map_python_type_to_json(type_name),
            "description": param_description.strip(),
        }
        if param_name in invisible_params:
            invisible_args[param_name] = arg_description
        else:
            args[param_name] = arg_description

    required = [
        name
        for name, param in signature.parameters.items()
        if name in args and param.default is inspect.Parameter.empty
    ]

    if inspect.iscoroutinefunction(func):

        @wraps(func)
        async def wrapper(*args, **kwargs):
            return await func(*args, **kwargs)

    else:

        @wraps(func)
        def wrapper(*args, **kwargs):
            return func(*args, **kwargs)

    wrapper.is_tool = True
    wrapper.name = func.__name__
    wrapper.description = description
    wrapper.args = args
    wrapper.invisible_args = invisible_args
    wrapper.input_schema = {"type": "object", "properties": args, "required": required}

    return wrapper


ToolLike = Union[Tool, Callable]


def as_tool(candidate: ToolLike) -> Tool:
    if isinstance(candidate, Tool):
        return candidate
    if callable(candidate):
        return Tool.from_function(candidate)
    raise TypeError(f"Cannot use {candidate!r} as a tool")


class ToolRegistry:
    """
    The set of tools one executor may call, keyed by tool id.

    Registries are passed explicitly to the executor; there is no process-wide tool table.
    """

    def __init__(self, tools: Optional[Iterable[ToolLike]] = None):
        self.tools: dict[str, Tool] = {}
        if tools:
            self.register_all(tools)

    def register(self, candidate: ToolLike) -> Tool:
        registered = as_tool(candidate)
        if registered.id in self.tools:
            logger.warning(f"Tool '{registered.id}' already exists and will be overwritten.")
        self.tools[registered.id] = registered
        logger.debug(f"Registered tool: {registered.id}")
        return registered

    def register_all(self, tools: Iterable[ToolLike]) -> None:
        for candidate in tools:
            self.register(candidate)

    def unregister(self, tool_id: str) -> bool:
        removed = self.tools.pop(tool_id, None) is not None
        if removed:
            logger.debug(f"Unregistered tool: {tool_id}")
        return removed

    def get(self, tool_id: str) -> Optional[Tool]:
        return self.tools.get(tool_id)

    def has(self, tool_id: str) -> bool:
        return tool_id in self.tools

    def get_all(self) -> dict[str, Tool]:
        return dict(self.tools)

    def get_ids(self) -> list[str]:
        return list(self.tools.keys())

    def count(self) -> int:
        return len(self.tools)

    def clear(self) -> None:
        self.tools.clear()
        logger.debug("Cleared all tools")

    def create_executor(self, node_schemas: Optional[dict[str, type]] = None):
        from plangraph.executor import PlanExecutor

        return PlanExecutor(self, node_schemas=node_schemas)

    def __contains__(self, tool_id: str) -> bool:
        return self.has(tool_id)

    def __len__(self) -> int:
        return self.count()


def ensure_registry(tools: Union["ToolRegistry", dict[str, ToolLike], Iterable[ToolLike], None]) -> ToolRegistry:
    """Accepts a registry, a mapping of id to tool, or an iterable of tools and returns a registry."""
    if isinstance(tools, ToolRegistry):
        return tools

    registry = ToolRegistry()
    if tools is None:
        return registry
    if isinstance(tools, dict):
        for tool_id, candidate in tools.items():
            registry.tools[tool_id] = candidate if isinstance(candidate, Tool) else Tool.from_function(candidate, tool_id)
        return registry

    registry.register_all(tools)
    return registry


def load_tools(tool_modules: list[Path], tool_names: Optional[list[str]] = None) -> list[Tool]:
    """
    Loads tools defined in Python files.

    Every module-level :class:`Tool` instance and every :func:`tool`-decorated function is collected.

    :param tool_modules: Paths of the Python files to load.
    :param tool_names: Optional allow-list of tool ids.
    :return: The loaded tools.
    """
    loaded = []

    for module_path in tool_modules:
        module_path = Path(module_path).resolve()
        module = load_module_from_path(module_path.stem, module_path)

        for attribute in vars(module).values():
            if isinstance(attribute, Tool):
                loaded.append(attribute)
            elif callable(attribute) and getattr(attribute, "is_tool", False):
                loaded.append(Tool.from_function(attribute))

    if tool_names is not None:
        missing = set(tool_names) - {loaded_tool.id for loaded_tool in loaded}
        if missing:
            raise ImportError(f"Could not find tools: {', '.join(sorted(missing))}")
        loaded = [loaded_tool for loaded_tool in loaded if loaded_tool.id in tool_names]

    return loaded
