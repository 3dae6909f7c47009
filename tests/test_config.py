import pytest

from plangraph.config import (
    EngineConfig,
    ExecutionOptions,
    dataclass_loader,
    load_config_from_yaml,
    load_plan,
    resolve_env_vars,
)
from plangraph.entities import ExecutionMode, LoopStep, ToolStep
from plangraph.errors import ConfigurationError, PlanValidationError


def test_execution_option_defaults():
    options = ExecutionOptions()

    assert options.max_retries == 2
    assert options.default_timeout_ms == 30000
    assert options.concurrency == 4
    assert options.enable_trace
    assert not options.fail_fast


@pytest.mark.parametrize(
    "overrides",
    [{"max_retries": 6}, {"max_retries": -1}, {"concurrency": 0}, {"concurrency": 11}, {"default_timeout_ms": -5}],
)
def test_out_of_range_options(overrides):
    with pytest.raises(ConfigurationError):
        ExecutionOptions(**overrides)


def test_with_overrides_copies_and_validates():
    options = ExecutionOptions(concurrency=2)

    updated = options.with_overrides(max_retries=0)

    assert updated.concurrency == 2 and updated.max_retries == 0
    assert options.max_retries == 2
    with pytest.raises(ConfigurationError, match="Unknown execution options: speed"):
        options.with_overrides(speed=3)


def test_resolve_env_vars(monkeypatch):
    monkeypatch.setenv("PLANGRAPH_TEST_VALUE", "42")
    monkeypatch.delenv("PLANGRAPH_UNSET", raising=False)

    data = {"a": "${PLANGRAPH_TEST_VALUE}", "b": ["x-${PLANGRAPH_UNSET:fallback}"], "c": 3}

    assert resolve_env_vars(data) == {"a": "42", "b": ["x-fallback"], "c": 3}
    with pytest.raises(ConfigurationError, match="PLANGRAPH_UNSET"):
        resolve_env_vars("${PLANGRAPH_UNSET}")


def test_load_config_from_file(test_files, monkeypatch):
    monkeypatch.delenv("PLANGRAPH_TEST_TIMEOUT", raising=False)

    config = load_config_from_yaml(test_files / "engine_config.yaml")

    assert isinstance(config, EngineConfig)
    assert config.options.max_retries == 1
    assert config.options.default_timeout_ms == 5000
    assert config.options.concurrency == 2
    assert config.tool_modules == [test_files.resolve() / "tool_test_files" / "math_tools.py"]
    assert config.tools is None


def test_load_config_from_string_rejects_unknown_keys():
    with pytest.raises(ConfigurationError, match="Unknown ExecutionOptions settings: turbo"):
        load_config_from_yaml("options:\n  turbo: true\n")


def test_load_config_from_string_validates_ranges():
    with pytest.raises(ConfigurationError):
        load_config_from_yaml("options:\n  concurrency: 50\n")


def test_serialize_to_yaml_round_trip():
    config = EngineConfig(options=ExecutionOptions(concurrency=3, on_node_start=print), tools=["add"])

    dumped = config.serialize_to_yaml()

    assert "onNodeStart" not in dumped
    loaded = EngineConfig.load_from_yaml(dumped)
    assert loaded.options.concurrency == 3
    assert loaded.tools == ["add"]


def test_dataclass_loader_coerces_env_strings():
    options = dataclass_loader(ExecutionOptions, {"concurrency": "3", "fail_fast": "true"})

    assert options.concurrency == 3
    assert options.fail_fast is True


def test_load_plan_from_yaml(test_files):
    plan = load_plan(test_files / "plans" / "sum_plan.yaml")

    assert plan.execution is ExecutionMode.DAG
    assert [step.id for step in plan.steps] == ["numbers", "doubled", "total"]
    loop = plan.steps[1]
    assert isinstance(loop, LoopStep)
    assert isinstance(loop.step, ToolStep)
    assert loop.step.id == "doubled_step"
    assert loop.as_ == "n"


def test_load_plan_reports_structural_errors():
    with pytest.raises(PlanValidationError) as exc_info:
        load_plan({"version": "3", "steps": [{"id": "a", "tool": "x"}]})

    assert [issue.path for issue in exc_info.value.errors] == ["version"]


def test_load_plan_rejects_unknown_format(tmp_path):
    plan_file = tmp_path / "plan.txt"
    plan_file.write_text("steps: []")

    with pytest.raises(PlanValidationError, match="Unsupported plan format"):
        load_plan(plan_file)
