import json
import os
import re
from dataclasses import asdict, dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Type, TypeVar, Union, get_args, get_origin

import yaml

from plangraph.entities import Plan
from plangraph.errors import ConfigurationError, PlanValidationError

T = TypeVar("T", bound="YamlSerializable")

MAX_RETRIES_LIMIT = 5
CONCURRENCY_LIMIT = 10


class YamlSerializable:
    """
    A base class for dataclasses that provides methods to load from YAML
    and serialize back to YAML with key conversion between snake_case
    (used in Python) and camelCase (used in YAML).
    """

    @classmethod
    def load_from_yaml(cls: Type[T], yaml_content: str, base_path: Optional[Path] = None) -> T:
        """
        Load a YAML string with camelCase keys into an instance of the dataclass.

        :param yaml_content: A YAML formatted string with camelCase keys.
        :param base_path: Optional base path for resolving relative paths.
        :return: An instance of the dataclass with values loaded from the YAML.
        """
        data = resolve_env_vars(yaml.safe_load(yaml_content) or {})
        return dataclass_loader(cls, cls._convert_keys_to_snake_case(data), base_path=base_path)

    def serialize_to_yaml(self) -> str:
        """Serialize the dataclass instance into a YAML string with camelCase keys, skipping callables."""
        instance_dict = _plain(asdict(self))
        return yaml.safe_dump(self._convert_keys_to_camel_case(instance_dict), default_flow_style=False)

    @staticmethod
    def _camel_to_snake(name: str) -> str:
        s1 = re.sub("(.)([A-Z][a-z]+)", r"\1_\2", name)
        return re.sub("([a-z0-9])([A-Z])", r"\1_\2", s1).lower()

    @staticmethod
    def _snake_to_camel(name: str) -> str:
        components = name.split("_")
        return components[0] + "".join(x.title() for x in components[1:])

    @classmethod
    def _convert_keys_to_snake_case(cls, d: Any) -> Any:
        if isinstance(d, dict):
            return {cls._camel_to_snake(k): cls._convert_keys_to_snake_case(v) for k, v in d.items()}
        elif isinstance(d, list):
            return [cls._convert_keys_to_snake_case(i) for i in d]
        else:
            return d

    @classmethod
    def _convert_keys_to_camel_case(cls, d: Any) -> Any:
        if isinstance(d, dict):
            return {cls._snake_to_camel(k): cls._convert_keys_to_camel_case(v) for k, v in d.items()}
        elif isinstance(d, list):
            return [cls._convert_keys_to_camel_case(i) for i in d]
        else:
            return d


def _plain(data: Any) -> Any:
    if isinstance(data, dict):
        return {k: _plain(v) for k, v in data.items() if v is not None and not callable(v)}
    elif isinstance(data, list):
        return [_plain(item) for item in data]
    elif isinstance(data, Path):
        return str(data)
    return data


@dataclass(kw_only=True)
class ExecutionOptions(YamlSerializable):
    """
    Options of a single run.

    The callbacks may be plain functions or coroutine functions. ``cancellation_signal`` is any object with
    an ``is_set()`` method (``asyncio.Event``, ``threading.Event``) or an ``aborted`` attribute.
    """

    plan_id: Optional[str] = None
    max_retries: int = 2
    default_timeout_ms: int = 30000
    concurrency: int = 4
    enable_trace: bool = True
    fail_fast: bool = False
    cancellation_signal: Any = field(default=None, repr=False)
    on_node_start: Optional[Callable[[str], Any]] = field(default=None, repr=False)
    on_node_complete: Optional[Callable[[str, Any], Any]] = field(default=None, repr=False)
    on_node_error: Optional[Callable[[str, str], Any]] = field(default=None, repr=False)

    def __post_init__(self):
        if not isinstance(self.max_retries, int) or not 0 <= self.max_retries <= MAX_RETRIES_LIMIT:
            raise ConfigurationError(f"max_retries must be between 0 and {MAX_RETRIES_LIMIT}, got {self.max_retries}")
        if not isinstance(self.concurrency, int) or not 1 <= self.concurrency <= CONCURRENCY_LIMIT:
            raise ConfigurationError(f"concurrency must be between 1 and {CONCURRENCY_LIMIT}, got {self.concurrency}")
        if not isinstance(self.default_timeout_ms, (int, float)) or self.default_timeout_ms < 0:
            raise ConfigurationError(f"default_timeout_ms must be a non-negative number, got {self.default_timeout_ms}")

    def with_overrides(self, **overrides) -> "ExecutionOptions":
        unknown = set(overrides) - {f.name for f in fields(self)}
        if unknown:
            raise ConfigurationError(f"Unknown execution options: {', '.join(sorted(unknown))}")
        return ExecutionOptions(**{**{f.name: getattr(self, f.name) for f in fields(self)}, **overrides})


@dataclass(kw_only=True)
class EngineConfig(YamlSerializable):
    """
    Represents the engine configuration: run options plus the Python files tools are loaded from.
    """

    options: ExecutionOptions = field(default_factory=ExecutionOptions)
    tool_modules: list[Path] = field(default_factory=list)
    tools: Optional[list[str]] = None


def resolve_env_vars(data):
    if isinstance(data, dict):
        return {k: resolve_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [resolve_env_vars(item) for item in data]
    elif isinstance(data, str):
        # Replace placeholders of the form ${VAR_NAME:default_value}
        pattern = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::([^}]*))?\}")

        def replace(match: re.Match) -> str:
            var, default = match.groups()
            env_value = os.getenv(var, default)
            if env_value is None:
                raise ConfigurationError(f"Environment variable '{var}' is not set and no default value provided.")
            return env_value

        return pattern.sub(replace, data)
    else:
        return data


def _coerce_scalar(field_type: Any, data: Any) -> Any:
    # environment substitution always yields strings
    if isinstance(data, str):
        if field_type is int:
            return int(data)
        if field_type is bool:
            return data.strip().lower() in ("1", "true", "yes", "on")
    return data


def dataclass_loader(dataclass_type, data, base_path: Optional[Path] = None):
    """Recursively loads YAML data into the appropriate dataclass."""
    if get_origin(dataclass_type) is Union:
        candidates = [arg for arg in get_args(dataclass_type) if arg is not type(None)]
        if len(candidates) == 1:
            dataclass_type = candidates[0]

    if is_dataclass(dataclass_type) and isinstance(data, dict):
        field_types = {f.name: f.type for f in fields(dataclass_type)}
        unknown = set(data) - set(field_types)
        if unknown:
            raise ConfigurationError(
                f"Unknown {dataclass_type.__name__} settings: {', '.join(sorted(unknown))}"
            )
        try:
            return dataclass_type(
                **{key: dataclass_loader(field_types[key], value, base_path=base_path) for key, value in data.items()}
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid {dataclass_type.__name__} settings: {e}") from e
    elif get_origin(dataclass_type) is list and isinstance(data, list):
        list_type = get_args(dataclass_type)[0]
        return [dataclass_loader(list_type, item, base_path=base_path) for item in data]
    elif dataclass_type == Path and isinstance(data, str):
        # Resolve paths relative to the base path
        path = Path(data)
        if not path.is_absolute() and base_path is not None:
            path = base_path / path
        return path
    else:
        return _coerce_scalar(dataclass_type, data)


def load_config_from_yaml(config: str | Path, base_path: Optional[Path] = None) -> EngineConfig:
    """
    Loads the engine configuration from YAML content and maps it to the EngineConfig dataclass.

    :param config: If type string then loads from YAML string, if Path loads the file containing the configs.
    :param base_path: Base path to resolve relative paths; defaults to the directory of the config file.
    :return: An instance of the EngineConfig dataclass.
    """
    if isinstance(config, Path):
        if not config.is_file():
            raise ConfigurationError(f"Config file '{config}' not found.")
        config_content = config.read_text(encoding="utf-8")
        if base_path is None:
            base_path = config.parent.resolve()
    else:
        config_content = config

    try:
        yaml_data = yaml.safe_load(config_content) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Could not parse config: {e}") from e
    if not isinstance(yaml_data, dict):
        raise ConfigurationError("Config must be a mapping")

    snake_case_data = YamlSerializable._convert_keys_to_snake_case(resolve_env_vars(yaml_data))
    return dataclass_loader(EngineConfig, snake_case_data, base_path=base_path)


def _read_plan_document(source: Union[str, Path]) -> Any:
    path = Path(source)
    if not path.is_file():
        raise PlanValidationError(f"Plan file '{path}' not found.")

    content = path.read_text(encoding="utf-8")
    try:
        if path.suffix == ".json":
            return json.loads(content)
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content)
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise PlanValidationError(f"Could not parse plan '{path}': {e}") from e
    raise PlanValidationError(f"Unsupported plan format: '{path.suffix}'")


def load_plan(source: Union[str, Path, Mapping, Plan]) -> Plan:
    """
    Loads a plan from a ``.json``/``.yaml``/``.yml`` file or a mapping.

    Plan documents are read as written (``depends_on``, ``timeout_ms``, ...), without key conversion;
    the structural checks run before the plan object is built.

    :param source: Path of the plan file, a plan mapping, or an already built plan.
    :return: The plan.
    :raises PlanValidationError: If the document cannot be read or is structurally invalid.
    """
    from plangraph.validator import validate_plan

    if isinstance(source, Plan):
        return source

    data = source if isinstance(source, Mapping) else _read_plan_document(source)
    if not isinstance(data, Mapping):
        raise PlanValidationError("Plan must be a mapping")

    result = validate_plan(data)
    if not result.success:
        raise PlanValidationError(f"Invalid plan:\n{result.describe()}", errors=result.errors)

    return Plan.from_dict(dict(data))
