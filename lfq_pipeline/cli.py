from __future__ import annotations

import sys
import logging
from pathlib import Path

import typer
import yaml

from .config import load_config, write_config_template
from .errors import LfqPipelineError
from .pipeline import build_runner, plan_steps, run_pipeline
from .sequence_notation import translate as translate_sequence
from .sink import TsvSink
from .utils import setup_logging

logger = logging.getLogger(__name__)

app = typer.Typer(help="Label-free quantification with OpenMS TOPP tools")


def _status(message: str) -> None:
    # transient single-line status on stderr
    if sys.stderr.isatty():
        typer.echo(f"\r{message[:100]:<100}", nl=False, err=True)


def _progress(fraction: float, label: str) -> None:
    typer.echo(f"[{fraction * 100:5.1f}%] {label}", err=True)


@app.command()
def init(
    config: Path = typer.Argument(..., help="Where to write the YAML config template."),
    bin_dir: str = typer.Option("/opt/OpenMS/bin", help="OpenMS bin directory written into the template."),
    overwrite: bool = typer.Option(False, help="Overwrite the config if it already exists."),
):
    if config.exists() and not overwrite:
        raise typer.BadParameter(f"{config} already exists. Use --overwrite to replace it.")
    path = write_config_template(config, bin_dir=bin_dir)
    typer.echo(f"Config template: {path}")


@app.command()
def run(
    config: Path = typer.Argument(..., help="YAML run config (see `lfq-pipeline init`)."),
    dry_run: bool = typer.Option(False, help="Validate the config and list the tool runs without executing."),
    verbose: bool = typer.Option(False, help="Also print tool output and debug messages to the console."),
):
    if not config.exists():
        raise typer.BadParameter(f"Config not found: {config}. Run `lfq-pipeline init {config}` to create a template.")

    try:
        cfg = load_config(config)
    except (LfqPipelineError, yaml.YAMLError) as e:
        raise typer.BadParameter(f"Could not load {config}: {e}")
    setup_logging(str(cfg.log_file) if cfg.log_file else None, verbose=verbose)

    try:
        cfg.validate()
    except LfqPipelineError as e:
        logger.error("%s", e)
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=1)

    if dry_run:
        steps = plan_steps(cfg, len(cfg.raw_files))
        for i, step in enumerate(steps, start=1):
            typer.echo(f"{i:>3}. {step}")
        typer.echo(f"{len(steps)} tool runs, nothing executed.")
        return

    try:
        run_pipeline(
            cfg,
            TsvSink(cfg.output_dir),
            runner=build_runner(cfg, status=_status),
            progress=_progress,
        )
    except LfqPipelineError as e:
        typer.echo(f"\nError: {e}", err=True)
        if cfg.log_file:
            typer.echo(f"Log: {cfg.log_file}", err=True)
        raise typer.Exit(code=1)

    typer.echo(f"Done. Results: {cfg.output_dir}")
    if cfg.log_file:
        typer.echo(f"Log: {cfg.log_file}")


@app.command()
def translate(
    sequence: str = typer.Argument(..., help="Unmodified peptide sequence."),
    mods: str = typer.Option("", help="Modification tags, e.g. \"N-Term(Acetyl); T4(Phospho)\"."),
):
    """Print a peptide in OpenMS bracket notation."""
    try:
        typer.echo(translate_sequence(sequence, mods))
    except LfqPipelineError as e:
        raise typer.BadParameter(str(e))


def main():
    app()


if __name__ == "__main__":
    main()
