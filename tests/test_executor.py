import asyncio

import pytest

from plangraph import create_graph_executor, create_plan_executor
from plangraph.config import ExecutionOptions
from plangraph.entities import TraceStatus
from plangraph.errors import CompilationError, ConfigurationError, NodeExecutionError, PlanValidationError
from plangraph.executor import DynamicGraphExecutor, PlanExecutor
from plangraph.tools import Tool


def slow_double():
    # larger values finish first so completion order differs from input order
    async def delayed(params):
        await asyncio.sleep(0.01 * (4 - params["value"]))
        return params["value"] * 2

    return Tool(id="double", execute=delayed)


@pytest.mark.asyncio
async def test_end_to_end_independent_fetches_share_a_wavefront(recorder):
    events = []
    tools = [
        recorder.tool("fetch_a", result="alpha", delay=0.02),
        recorder.tool("fetch_b", result="beta", delay=0.02),
        recorder.tool("combine", fn=lambda params: f"{params['a']}+{params['b']}"),
    ]
    plan = {
        "version": "1.0",
        "execution": "dag",
        "steps": [
            {"id": "fetchA", "tool": "fetch_a", "output": "fetchA.output"},
            {"id": "fetchB", "tool": "fetch_b", "output": "fetchB.output"},
            {
                "id": "final",
                "type": "final",
                "function": "combine",
                "input": {"a": "{{fetchA.output}}", "b": "{{fetchB.output}}"},
                "depends_on": ["fetchA", "fetchB"],
            },
        ],
    }
    options = ExecutionOptions(
        on_node_start=lambda node_id: events.append(("running", node_id)),
        on_node_complete=lambda node_id, result: events.append(("success", node_id)),
    )

    context, trace = await DynamicGraphExecutor(tools).run(plan, {}, options)

    assert context["final"] == "alpha+beta"
    assert events[:2] == [("running", "fetchA"), ("running", "fetchB")]
    assert set(events[2:4]) == {("success", "fetchA"), ("success", "fetchB")}
    assert events[4:] == [("running", "final"), ("success", "final")]
    assert trace.statistics.total_steps == 3
    assert trace.statistics.successful_steps == 3
    assert trace.execution_mode.value == "dag"


@pytest.mark.asyncio
async def test_cyclic_plan_never_starts(recorder):
    plan = {
        "steps": [
            {"id": "A", "tool": "t", "depends_on": ["B"]},
            {"id": "B", "tool": "t", "depends_on": ["A"]},
        ]
    }

    with pytest.raises(PlanValidationError) as exc_info:
        await DynamicGraphExecutor([recorder.tool("t")]).run(plan)

    assert "Circular dependency detected involving step 'A'" in str(exc_info.value)
    assert recorder.calls == []


@pytest.mark.asyncio
async def test_invalid_structure_is_reported_before_running():
    with pytest.raises(PlanValidationError) as exc_info:
        await DynamicGraphExecutor().run({"version": "1.0", "steps": []})

    assert [str(issue) for issue in exc_info.value.errors] == ["steps: At least one step is required"]


@pytest.mark.asyncio
async def test_unknown_tool_raises_compilation_error():
    with pytest.raises(CompilationError, match="Unknown tool: nope"):
        await DynamicGraphExecutor().run({"steps": [{"id": "a", "tool": "nope"}]})


@pytest.mark.asyncio
async def test_concurrency_bound_holds_for_independent_steps(recorder):
    tools = [recorder.tool(f"t{idx}", delay=0.02) for idx in range(8)]
    plan = {"steps": [{"id": f"s{idx}", "tool": f"t{idx}"} for idx in range(8)]}

    await DynamicGraphExecutor(tools).run(plan, concurrency=3)

    assert recorder.max_running == 3


@pytest.mark.asyncio
async def test_retry_then_success_is_traced(recorder):
    flaky = recorder.tool("flaky", result="finally", fail_times=2)
    loop = asyncio.get_running_loop()
    start = loop.time()

    context, trace = await DynamicGraphExecutor([flaky]).run(
        {"steps": [{"id": "f", "tool": "flaky"}]}, max_retries=2
    )

    assert loop.time() - start >= 0.3
    assert context["f"] == "finally"
    entry = trace.entry_for("f")
    assert entry.status is TraceStatus.SUCCESS
    assert entry.retry_count == 2
    assert entry.to_json_dict()["retryCount"] == 2


@pytest.mark.asyncio
async def test_static_loop_keeps_input_order():
    plan = {
        "steps": [
            {
                "id": "loop",
                "type": "loop",
                "over": "items",
                "as": "item",
                "step": {"tool": "double", "input": {"value": "{{item}}"}},
                "output": "doubled",
            }
        ]
    }

    context, trace = await DynamicGraphExecutor([slow_double()]).run(plan, {"items": [3, 1, 2]}, concurrency=3)

    assert context["doubled"] == [6, 2, 4]
    assert {entry.node_id for entry in trace.entries} == {"loop_iter_0", "loop_iter_1", "loop_iter_2", "doubled"}


@pytest.mark.asyncio
async def test_dynamic_loop_keeps_input_order(recorder):
    plan = {
        "steps": [
            {"id": "items", "tool": "fetch", "output": "items"},
            {
                "id": "loop",
                "type": "loop",
                "over": "items",
                "as": "item",
                "concurrency": 3,
                "step": {"tool": "double", "input": {"value": "{{item}}"}},
                "output": "doubled",
                "depends_on": ["items"],
            },
            {"id": "total", "tool": "sum", "input": {"values": "{{doubled}}"}, "depends_on": ["loop"]},
        ]
    }
    tools = [
        recorder.tool("fetch", result=[3, 1, 2]),
        slow_double(),
        recorder.tool("sum", fn=lambda params: sum(params["values"])),
    ]

    context, trace = await DynamicGraphExecutor(tools).run(plan)

    assert context["doubled"] == [6, 2, 4]
    assert context["total"] == 12
    assert [entry.node_id for entry in trace.entries] == ["items", "loop_dynamic", "total"]


@pytest.mark.asyncio
async def test_failure_attaches_trace_and_context(recorder):
    plan = {
        "steps": [
            {"id": "ok", "tool": "good"},
            {"id": "bad", "tool": "bad", "retry_count": 0},
            {"id": "after", "tool": "good", "depends_on": ["bad"]},
        ]
    }
    tools = [recorder.tool("good", result=1), recorder.tool("bad", fail_times=5)]

    with pytest.raises(NodeExecutionError) as exc_info:
        await DynamicGraphExecutor(tools).run(plan)

    error = exc_info.value
    assert error.step_id == "bad"
    assert error.context == {"ok": 1, "after": 1}
    assert error.trace.statistics.failed_steps == 1
    assert error.trace.statistics.successful_steps == 2
    assert error.trace.entry_for("bad").error == "bad failed"
    assert error.trace.finished_at is not None


@pytest.mark.asyncio
async def test_raising_callback_does_not_abandon_running_nodes(recorder):
    def on_complete(node_id, result):
        if node_id == "a":
            raise RuntimeError("ui exploded")

    tools = [recorder.tool("fast", result="a"), recorder.tool("slow", result="b", delay=0.2)]
    plan = {"steps": [{"id": "a", "tool": "fast"}, {"id": "b", "tool": "slow"}]}

    context, trace = await DynamicGraphExecutor(tools).run(
        plan, options=ExecutionOptions(concurrency=2, on_node_complete=on_complete)
    )

    assert context == {"a": "a", "b": "b"}
    assert recorder.running == 0
    assert [(entry.node_id, entry.status) for entry in trace.entries] == [
        ("a", TraceStatus.SUCCESS),
        ("b", TraceStatus.SUCCESS),
    ]
    assert trace.finished_at is not None


@pytest.mark.asyncio
async def test_cancellation_mid_run_marks_remaining_nodes(recorder):
    signal = asyncio.Event()

    def on_complete(node_id, result):
        if node_id == "a":
            signal.set()

    plan = {
        "steps": [
            {"id": "a", "tool": "t"},
            {"id": "b", "tool": "t", "depends_on": ["a"]},
            {"id": "c", "tool": "t", "depends_on": ["b"]},
        ]
    }
    options = ExecutionOptions(cancellation_signal=signal, on_node_complete=on_complete)

    context, trace = await DynamicGraphExecutor([recorder.tool("t", result=1)]).run(plan, options=options)

    assert context == {"a": 1}
    assert [call[0] for call in recorder.calls] == ["t"]
    assert [(entry.node_id, entry.status) for entry in trace.entries] == [
        ("a", TraceStatus.SUCCESS),
        ("b", TraceStatus.CANCELLED),
        ("c", TraceStatus.CANCELLED),
    ]
    assert trace.statistics.cancelled_steps == 2
    assert trace.statistics.successful_steps == 1


@pytest.mark.asyncio
async def test_initial_context_is_not_mutated(registry):
    initial = {"user": {"name": "ada"}}

    context, trace = await DynamicGraphExecutor(registry).run(
        {"steps": [{"id": "shout", "tool": "upper", "input": {"text": "{{user.name}}"}}]}, initial
    )

    assert initial == {"user": {"name": "ada"}}
    assert context["shout"] == "ADA"
    assert trace.context_snapshot == context
    assert trace.context_snapshot is not context


@pytest.mark.asyncio
async def test_snapshot_is_skipped_when_trace_disabled(registry):
    _, trace = await DynamicGraphExecutor(registry).run(
        {"steps": [{"id": "e", "tool": "echo"}]}, enable_trace=False, plan_id="fixed"
    )

    assert trace.context_snapshot is None
    assert trace.plan_id == "fixed"
    assert trace.to_json_dict()["planId"] == "fixed"


@pytest.mark.asyncio
async def test_out_of_range_options_are_rejected(registry):
    with pytest.raises(ConfigurationError):
        await DynamicGraphExecutor(registry).run({"steps": [{"id": "e", "tool": "echo"}]}, concurrency=11)


@pytest.mark.asyncio
async def test_dependency_on_compound_step_waits_for_all_children(recorder):
    plan = {
        "steps": [
            {
                "id": "par",
                "type": "parallel",
                "steps": [{"id": "a", "tool": "slow"}, {"id": "b", "tool": "slow"}],
            },
            {"id": "after", "tool": "check", "depends_on": ["par"]},
        ]
    }
    tools = [
        recorder.tool("slow", result="done", delay=0.02),
        Tool(id="check", execute=lambda params, context: [context.get("a"), context.get("b")]),
    ]

    context, _ = await DynamicGraphExecutor(tools).run(plan)

    assert context["after"] == ["done", "done"]


@pytest.mark.asyncio
async def test_plan_executor_facade(registry):
    plan = {
        "steps": [
            {"id": "a", "tool": "echo"},
            {"id": "b", "tool": "echo"},
            {"id": "c", "tool": "echo", "depends_on": ["a", "b"]},
        ]
    }
    executor = create_plan_executor(registry)

    assert isinstance(executor, PlanExecutor)
    assert executor.validate(plan).success
    assert executor.preview_layers(plan) == [["a", "b"], ["c"]]

    context, _ = await executor.execute(plan, {"seed": 1})
    assert set(context) == {"seed", "a", "b", "c"}

    executor.update_tools([])
    assert not executor.validate(plan).success


def test_factories_and_registry_shortcut(registry):
    assert isinstance(create_graph_executor(registry), DynamicGraphExecutor)
    assert isinstance(registry.create_executor(), PlanExecutor)
