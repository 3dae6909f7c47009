import asyncio
import time
from pathlib import Path

import pytest

from plangraph.entities import ExecutionMode, ExecutionTrace, GraphNode
from plangraph.tools import Tool, ToolRegistry
from plangraph.utils import utc_now_iso

TEST_FILES = Path(__file__).parent / "test_files"


class Recorder:
    """Records tool calls and tracks how many ran at the same time."""

    def __init__(self):
        self.calls = []
        self.running = 0
        self.max_running = 0
        self.intervals = {}

    def tool(self, tool_id, result=None, delay=0.0, fail_times=0, fn=None):
        failures = {"left": fail_times}

        async def execute(params, context=None):
            start = time.monotonic()
            self.calls.append((tool_id, params))
            self.running += 1
            self.max_running = max(self.max_running, self.running)
            try:
                if delay:
                    await asyncio.sleep(delay)
                if failures["left"] > 0:
                    failures["left"] -= 1
                    raise RuntimeError(f"{tool_id} failed")
                return fn(params) if fn else result
            finally:
                self.running -= 1
                self.intervals.setdefault(tool_id, []).append((start, time.monotonic()))

        return Tool(id=tool_id, execute=execute)


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def test_files():
    return TEST_FILES


@pytest.fixture
def echo_tool():
    return Tool(id="echo", execute=lambda params: params)


@pytest.fixture
def registry(echo_tool):
    return ToolRegistry(
        [
            echo_tool,
            Tool(id="double", execute=lambda params: params["value"] * 2),
            Tool(id="upper", execute=lambda params: str(params["text"]).upper()),
        ]
    )


@pytest.fixture
def trace():
    return ExecutionTrace(plan_id="test_plan", execution_mode=ExecutionMode.DAG, started_at=utc_now_iso())


def make_node(node_id, fn=None, deps=None, **metadata):
    node = GraphNode(id=node_id, fn=fn or (lambda context: node_id), deps=list(deps or []))
    for key, value in metadata.items():
        setattr(node.metadata, key, value)
    return node
