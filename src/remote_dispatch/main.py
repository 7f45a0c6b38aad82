"""CLI entrypoint for remote-dispatch."""

from pathlib import Path

import rich_click as click

from remote_dispatch import __version__
from remote_dispatch.config import CONNECTORS, EXECUTION_UNITS, LOG_LEVELS, Settings
from remote_dispatch.dispatch.controllers import DispatchCliController, RunCommand, WorkerCommand
from remote_dispatch.dispatch.models import (
    DispatchConfigurationError,
    TargetKind,
    TargetValidationError,
)
from remote_dispatch.logging_setup import configure_logging

click.rich_click.USE_MARKDOWN = True
DISPATCH_CONTROLLER = DispatchCliController()


@click.group()
@click.version_option(version=__version__, prog_name="remote-dispatch")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Log level for stderr logging. Defaults to REMOTE_DISPATCH_LOG_LEVEL or WARNING.",
)
def remote_dispatch(log_level: str | None) -> None:
    """Run one command against many remote sites with bounded concurrency."""

    try:
        configure_logging(log_level or Settings.from_env().logging.level)
    except ValueError as error:
        raise click.ClickException(str(error)) from error


@remote_dispatch.command("run")
@click.argument("command")
@click.option(
    "--target",
    "target_specs",
    multiple=True,
    help="Target as `ID:KIND` or `ID:KIND:URL`. Can be repeated.",
)
@click.option(
    "--targets-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="CSV file with a `target_id,target_kind,target_url` header row.",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum workers in flight. Defaults to REMOTE_DISPATCH_CONCURRENCY_LIMIT or 10.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.IntRange(min=0),
    default=None,
    help="Per-task deadline in seconds, 0 disables it. Defaults to 120.",
)
@click.option(
    "--unit",
    "execution_unit",
    type=click.Choice(EXECUTION_UNITS, case_sensitive=False),
    default=None,
    help="Run workers as threads or as separate processes.",
)
@click.option(
    "--connector",
    type=click.Choice(CONNECTORS, case_sensitive=False),
    default=None,
    help="How workers reach a target: `ssh`, or `local` for a dry run on this machine.",
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"], case_sensitive=False),
    default="text",
    show_default=True,
    help="Summary format. With json, progress lines go to stderr.",
)
@click.option("--quiet", is_flag=True, help="Do not print per-task progress lines.")
@click.option(
    "--fail-on-error",
    is_flag=True,
    help="Exit with status 1 when any task failed.",
)
def run(  # noqa: PLR0913
    command: str,
    target_specs: tuple[str, ...],
    targets_file: Path | None,
    concurrency: int | None,
    timeout_seconds: int | None,
    execution_unit: str | None,
    connector: str | None,
    output_format: str,
    quiet: bool,
    fail_on_error: bool,
) -> None:
    """Run COMMAND against every target and print a summary."""

    json_output = output_format.lower() == "json"
    try:
        result = DISPATCH_CONTROLLER.run(
            RunCommand(
                command=command,
                target_specs=target_specs,
                targets_file=targets_file,
                concurrency=concurrency,
                timeout_seconds=timeout_seconds,
                execution_unit=execution_unit,
                connector=connector,
                output_format=output_format.lower(),
                quiet=quiet,
            ),
            emit_progress=lambda line: click.echo(line, err=json_output),
        )
    except TargetValidationError as error:
        raise click.BadParameter(str(error)) from error
    except (DispatchConfigurationError, ValueError) as error:
        raise click.ClickException(str(error)) from error

    _emit_lines(result.lines)
    if result.report.cancelled:
        raise click.ClickException("Dispatch cancelled.")
    if fail_on_error and not result.success:
        raise click.ClickException(f"{result.report.failed} task(s) failed.")


@remote_dispatch.command("worker", hidden=True)
@click.option("--target-id", required=True, help="Target identifier.")
@click.option(
    "--target-kind",
    required=True,
    type=click.Choice([kind.value for kind in TargetKind], case_sensitive=False),
    help="Hosting platform of the target.",
)
@click.option("--target-url", default=None, help="Target URL, required for some kinds.")
@click.option("--command", "remote_command", required=True, help="Command to run remotely.")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.IntRange(min=0),
    default=None,
    help="Deadline in seconds, 0 disables it.",
)
@click.option(
    "--connector",
    type=click.Choice(CONNECTORS, case_sensitive=False),
    default=None,
    help="Session connector to use.",
)
def worker(  # noqa: PLR0913
    target_id: str,
    target_kind: str,
    target_url: str | None,
    remote_command: str,
    timeout_seconds: int | None,
    connector: str | None,
) -> None:
    """Run one command against one target and print a single JSON result record."""

    try:
        DISPATCH_CONTROLLER.run_worker(
            WorkerCommand(
                target_id=target_id,
                target_kind=target_kind,
                target_url=target_url,
                command=remote_command,
                timeout_seconds=timeout_seconds,
                connector=connector,
            ),
        )
    except TargetValidationError as error:
        raise click.UsageError(str(error)) from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    remote_dispatch()
