import asyncio
import logging
from pathlib import Path

from dotenv import load_dotenv

from plangraph import DynamicGraphExecutor, ToolRegistry, load_config_from_yaml, load_plan, load_tools, render_trace_summary

logging.basicConfig(level=logging.INFO)

load_dotenv()

HERE = Path(__file__).parent


async def main() -> None:
    config = load_config_from_yaml(HERE / "report_config.yaml")
    executor = DynamicGraphExecutor(ToolRegistry(load_tools(config.tool_modules, config.tools)))

    context, trace = await executor.run(
        load_plan(HERE / "report_plan.yaml"), {"quarter": "Q2", "audience": "leadership team"}, config.options
    )

    print(render_trace_summary(trace))
    print(f"{'='*20}\nAnswer:\n{context['answer']}\n{'='*20}")


if __name__ == "__main__":
    asyncio.run(main())
