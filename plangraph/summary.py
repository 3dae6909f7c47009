from plangraph.entities import ExecutionTrace
from plangraph.utils import load_template_from_package


def render_trace_summary(trace: ExecutionTrace) -> str:
    """Renders a human-readable summary of a run: header, node statistics and one line per trace entry."""
    template = load_template_from_package("plangraph.assets", "trace_summary.jinja2")
    return template.render(trace=trace).rstrip() + "\n"
