import asyncio
import importlib.util
import inspect
import logging
import sys
import time
import uuid
from collections import deque
from datetime import datetime, timezone
from importlib import resources
from pathlib import Path
from typing import Any, Awaitable, Callable

import jinja2
from jinja2 import Template

logger = logging.getLogger(__name__)


def load_module_from_path(module_name: str, module_path: Path):
    module_path = module_path.resolve()
    if not module_path.is_file():
        raise FileNotFoundError(f"Module file '{module_path}' not found.")

    logger.info(f"Loading module from path: {module_path}")

    spec = importlib.util.spec_from_file_location(module_name, str(module_path))
    if spec is None:
        raise ImportError(f"Could not create a spec for module from {module_path}")

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module  # Ensure the module is added to sys.modules
    spec.loader.exec_module(module)

    return module


def load_template_from_package(package_name: str, template_name: str) -> Template:
    """
    Loads a Jinja2 template from the specified package's assets folder.

    :param package_name: The full package name where the assets are located (e.g., 'plangraph.assets').
    :param template_name: The name of the template file (e.g., 'trace_summary.jinja2').
    :return: Jinja2 Template object.
    :raises FileNotFoundError: If the template file does not exist.
    """
    logger.debug(f"Loading template '{template_name}' from package '{package_name}'")
    template_file = resources.files(package_name).joinpath(template_name)
    if not template_file.is_file():
        raise FileNotFoundError(f"Template '{template_name}' not found in package '{package_name}'")

    return jinja2.Template(template_file.read_text(encoding="utf-8"), trim_blocks=True, lstrip_blocks=True)


def snake_to_camel(name: str) -> str:
    components = name.split("_")
    return components[0] + "".join(x.title() for x in components[1:])


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_id(prefix: str = "") -> str:
    """Generates a unique id such as ``plan_1718000000000_3f9a1c2``."""
    unique = f"{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"
    return f"{prefix}_{unique}" if prefix else unique


async def map_bounded(items: list, func: Callable[[Any], Awaitable[Any]], concurrency: int) -> list:
    """
    Applies ``func`` to every item with at most ``concurrency`` calls in flight.

    A new item starts as soon as a running one finishes. Results are returned in input order,
    whatever the completion order. The first exception cancels the remaining workers and is re-raised.
    """
    results = [None] * len(items)
    queue = deque(enumerate(items))

    async def worker():
        while queue:
            idx, item = queue.popleft()
            results[idx] = await func(item)

    workers = [asyncio.ensure_future(worker()) for _ in range(min(max(concurrency, 1), len(items)))]
    try:
        await asyncio.gather(*workers)
    except BaseException:
        for task in workers:
            task.cancel()
        raise

    return results


async def maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value
