"""Report rendering for hostplay.

Templates are jinja2 text rendered with StrictUndefined: a placeholder that
does not resolve raises TemplateError instead of producing an empty string.
Reports are written to ``{reports_dir}/{run_timestamp}_{kind}_{host}.{ext}``.
"""

import logging
from collections.abc import Mapping
from datetime import datetime
from pathlib import Path
from typing import Any

import jinja2

from .exceptions import TemplateError
from .facts import FactSet
from .types import HostConfig, TaskResult

logger = logging.getLogger(__name__)

RUN_TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S"


def format_run_timestamp(moment: datetime | None = None) -> str:
    """Timestamp used in report file names, e.g. 20261019T120000."""
    return (moment or datetime.now()).strftime(RUN_TIMESTAMP_FORMAT)


def create_environment() -> jinja2.Environment:
    return jinja2.Environment(
        undefined=jinja2.StrictUndefined,
        keep_trailing_newline=True,
        autoescape=False,
    )


_environment = create_environment()


def render(template: str, context: Mapping[str, Any]) -> str:
    """Render template text against a context.

    Raises:
        TemplateError: For an undefined placeholder or invalid syntax
    """
    try:
        return _environment.from_string(template).render(**context)
    except jinja2.UndefinedError as e:
        raise TemplateError(f"Undefined placeholder: {e.message}") from e
    except jinja2.TemplateSyntaxError as e:
        raise TemplateError(f"Malformed template (line {e.lineno}): {e.message}") from e


def render_value(value: Any, context: Mapping[str, Any]) -> Any:
    """Render a string if it contains template markup, else return it unchanged."""
    if isinstance(value, str) and ("{{" in value or "{%" in value):
        return render(value, context)
    return value


def build_context(
    host: HostConfig,
    facts: FactSet | None,
    results: Mapping[str, TaskResult],
    variables: Mapping[str, Any],
    run_timestamp: str,
) -> dict[str, Any]:
    """Assemble the render context for a host.

    Results are exposed by task name as plain dicts, in key order, so the
    same store snapshot always yields the same context.
    """
    return {
        **dict(variables),
        "host": host.to_dict(),
        "facts": facts.to_dict() if facts else {},
        "results": {name: result.to_dict() for name, result in results.items()},
        "vars": dict(variables),
        "run_timestamp": run_timestamp,
    }


def check_name_part(value: str, what: str) -> str:
    """Reject values that would move a report out of the reports directory.

    Raises:
        TemplateError: If the value is empty or holds a path separator or ".."
    """
    if not value or "/" in value or "\\" in value or ".." in value:
        raise TemplateError(f"Invalid {what} in report file name: {value!r}")
    return value


def report_path(
    reports_dir: str | Path,
    run_timestamp: str,
    report_kind: str,
    host_name: str,
    ext: str,
) -> Path:
    """Deterministic report location for a host and run."""
    check_name_part(run_timestamp, "run timestamp")
    check_name_part(report_kind, "report kind")
    check_name_part(host_name, "host name")
    check_name_part(ext, "extension")
    return Path(reports_dir) / f"{run_timestamp}_{report_kind}_{host_name}.{ext.lstrip('.')}"


def write_report(path: Path, text: str) -> Path:
    """Write a report, creating its directory when needed."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text)
    logger.info(f"Wrote report {path}")
    return path


def template_extension(src: str | Path) -> str:
    """Report extension derived from the template name: report.txt.j2 -> txt."""
    name = Path(src).name
    if name.endswith(".j2"):
        name = name[: -len(".j2")]
    suffix = Path(name).suffix
    return suffix.lstrip(".") or "txt"


class ReportRenderer:
    """Renders per-host reports for one run.

    Example:
        renderer = ReportRenderer("reports", run_timestamp="20261019T120000")
        path, text = renderer.render_report(
            "templates/report.txt.j2", "provision", "web01", context
        )
    """

    def __init__(self, reports_dir: str | Path = "reports", run_timestamp: str | None = None) -> None:
        self.reports_dir = Path(reports_dir)
        self.run_timestamp = run_timestamp or format_run_timestamp()

    def path_for(self, report_kind: str, host_name: str, ext: str) -> Path:
        return report_path(self.reports_dir, self.run_timestamp, report_kind, host_name, ext)

    def write(self, path: Path, text: str) -> Path:
        return write_report(path, text)

    def render_report(
        self,
        template_src: str | Path,
        report_kind: str,
        host_name: str,
        context: Mapping[str, Any],
        ext: str | None = None,
        write: bool = True,
    ) -> tuple[Path, str]:
        """Render a template file for a host and optionally write it.

        Raises:
            TemplateError: If the template is missing, malformed, or
                references an undefined name
        """
        try:
            template = Path(template_src).read_text()
        except FileNotFoundError:
            raise TemplateError(f"Template not found: {template_src}") from None

        text = render(template, context)
        path = self.path_for(report_kind, host_name, ext or template_extension(template_src))
        if write:
            write_report(path, text)
        return path, text
