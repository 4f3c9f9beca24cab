# cli.py
from __future__ import annotations

import signal
import sys
from pathlib import Path

import click

from ciflow.config import Settings
from ciflow.engine import PipelineEngine
from ciflow.errors import ConfigError, GraphConstructionError, TriggerValidationError
from ciflow.loader import load_definition_file
from ciflow.ui.console import Console, get_console, set_console


def find_pipeline_files() -> list[Path]:
    """
    Find all pipeline files in the current directory.

    Returns:
        List of Path objects for pipeline files
    """
    pipeline_files = []
    current_dir = Path(".")

    default_pipeline = current_dir / "ciflow_pipeline.py"
    if default_pipeline.exists():
        pipeline_files.append(default_pipeline)

    for pattern in ("*_pipeline.py", "*.pipeline.json"):
        for path in current_dir.glob(pattern):
            if path != default_pipeline:
                pipeline_files.append(path)

    return sorted(pipeline_files)


def discover_pipeline(pipeline_arg: str | None) -> Path:
    """
    Discover pipeline file from argument or default.

    Raises:
        SystemExit: If the pipeline cannot be found or several candidates exist
    """
    console = get_console()

    if pipeline_arg:
        pipeline_path = Path(pipeline_arg)
        if not pipeline_path.exists() and pipeline_path.suffix not in (".py", ".json"):
            pipeline_path = Path(str(pipeline_path) + ".py")
        if not pipeline_path.exists():
            console.print_error(
                "Pipeline file not found",
                f"Could not find pipeline file: {pipeline_arg}",
                suggestion="Create a pipeline file or specify a different path:\n  ciflow run --pipeline my_pipeline.py",
            )
            sys.exit(1)
        return pipeline_path

    pipeline_files = find_pipeline_files()

    if len(pipeline_files) == 0:
        console.print_error(
            "No pipeline file found",
            "Could not find any pipeline files.",
            details=[
                "Looked for:",
                "  ciflow_pipeline.py",
                "  *_pipeline.py",
                "  *.pipeline.json",
            ],
            suggestion="Create a pipeline file:\n  ciflow_pipeline.py\n\nOr specify a pipeline explicitly:\n  ciflow run --pipeline my_pipeline.py",
        )
        sys.exit(1)

    if len(pipeline_files) > 1:
        file_list = "\n".join(f"  {f}" for f in pipeline_files)
        console.print_error(
            "Multiple pipeline files found",
            "Found multiple pipeline files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a pipeline explicitly:\n  ciflow run --pipeline ciflow_pipeline.py",
        )
        sys.exit(1)

    return pipeline_files[0]


def parse_inputs(pairs: tuple[str, ...]) -> dict[str, str]:
    inputs: dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got {pair!r}", param_hint="--input")
        inputs[key.strip()] = value
    return inputs


def _load_engine(ctx, pipeline: str | None, **overrides) -> PipelineEngine:
    console = get_console()
    pipeline_path = discover_pipeline(pipeline)
    settings: Settings = ctx.obj["settings"]
    settings = Settings(
        max_workers=overrides.get("workers") or settings.max_workers,
        task_timeout=overrides.get("timeout") or settings.task_timeout,
        poll_interval=settings.poll_interval,
        debug=settings.debug,
    )
    try:
        definition = load_definition_file(pipeline_path)
    except Exception as e:
        console.print_error(
            "Failed to load pipeline",
            f"Could not load pipeline from {pipeline_path}",
            details=str(e).splitlines(),
        )
        if console.debug:
            console.print_exception(e)
        sys.exit(1)
    return PipelineEngine(definition, settings=settings, console=console)


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces, task logs and detailed output)",
)
@click.option("--quiet", "-q", is_flag=True, default=False, help="Only print errors and the results table")
@click.pass_context
def cli(ctx, debug, quiet):
    """ciflow: DAG-based CI/CD pipeline engine."""
    try:
        settings = Settings.from_env()
    except ConfigError as e:
        Console().print_error("Invalid configuration", str(e))
        sys.exit(1)
    console = Console(debug=debug or settings.debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = console.debug
    ctx.obj["settings"] = settings


@cli.command()
@click.option("--pipeline", default=None, help="Pipeline file (defaults to ciflow_pipeline.py if present)")
@click.option("--input", "-i", "inputs", multiple=True, metavar="KEY=VALUE", help="Trigger input (repeatable)")
@click.option("--workers", default=None, type=click.IntRange(min=1), help="Number of parallel job instances")
@click.option("--timeout", default=None, type=click.FloatRange(min=0, min_open=True), help="Default per-task timeout (seconds)")
@click.option(
    "--event",
    default="manual",
    show_default=True,
    type=click.Choice(["manual", "push", "pull_request", "schedule"]),
    help="Event that triggers the run",
)
@click.option("--ref", default=None, help="Branch/ref for push and pull_request events")
@click.option("--report", "report_path", default=None, type=click.Path(dir_okay=False), help="Write the JSON run report here")
@click.pass_context
def run(ctx, pipeline, inputs, workers, timeout, event, ref, report_path):
    """Run a pipeline."""
    console = get_console()
    engine = _load_engine(ctx, pipeline, workers=workers, timeout=timeout)
    supplied = parse_inputs(inputs)

    def _on_signal(signum, frame):
        console.print_info("\nCancelling run...")
        engine.cancel()

    previous = {sig: signal.signal(sig, _on_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        report = engine.run(supplied, event=event, ref=ref)
    except (GraphConstructionError, TriggerValidationError) as e:
        console.print_error("Pipeline rejected", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if report_path:
        Path(report_path).write_text(report.to_json())
        console.print_debug(f"report written to {report_path}")

    if report.cancelled:
        sys.exit(130)
    if not report.ok:
        sys.exit(1)


@cli.command()
@click.option("--pipeline", default=None, help="Pipeline file (defaults to ciflow_pipeline.py if present)")
@click.pass_context
def plan(ctx, pipeline):
    """Print the execution stages of a pipeline without running it."""
    console = get_console()
    engine = _load_engine(ctx, pipeline)
    try:
        graph = engine.validate()
    except GraphConstructionError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(1)
    console.print_plan(engine.definition.name, graph.levels())


@cli.command()
@click.option("--pipeline", default=None, help="Pipeline file (defaults to ciflow_pipeline.py if present)")
@click.pass_context
def validate(ctx, pipeline):
    """Check a pipeline definition (graph, matrix, references, task identifiers)."""
    console = get_console()
    engine = _load_engine(ctx, pipeline)
    try:
        graph = engine.validate()
    except GraphConstructionError as e:
        console.print_error("Invalid pipeline", str(e))
        sys.exit(1)
    console.print_info(
        f"OK: {engine.definition.name} ({len(engine.definition.jobs)} jobs, {len(graph)} instances)"
    )


if __name__ == "__main__":
    cli()
