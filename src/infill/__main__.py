"""CLI entry point for Infill."""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path

import click

from infill import __version__
from infill.backends.factory import BackendType, detect_backend_type
from infill.config import Config, ConfigError, InferenceConfig, load_config, normalize_endpoint
from infill.engine.completion import CompletionService
from infill.exceptions import InfillError
from infill.prompts.rewrite import RewriteFormat


def _make_service(config: Config) -> CompletionService:
    return CompletionService.from_config(config)


def _inference_config(
    ctx: click.Context,
    endpoint: str | None,
    model: str | None,
    backend: str | None,
) -> InferenceConfig:
    """Apply command-line overrides on top of the [inference] section."""
    inference = ctx.obj["config"].inference
    overrides: dict = {}
    if endpoint:
        overrides["endpoint"] = normalize_endpoint(endpoint)
    if model:
        overrides["model"] = model
    if backend:
        overrides["backend_type"] = backend
    return replace(inference, **overrides) if overrides else inference


def _run(ctx: click.Context, coro_factory) -> object:
    """Run a coroutine against a fresh service, mapping errors to exit code 1."""
    service = _make_service(ctx.obj["config"])

    async def _main():
        try:
            return await coro_factory(service)
        finally:
            await service.close()

    try:
        return asyncio.run(_main())
    except InfillError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


def _server_options(func):
    func = click.option(
        "--backend", "-b",
        type=click.Choice([t.value for t in BackendType]),
        default=None,
        help="Backend protocol. Detected from the endpoint when omitted.",
    )(func)
    func = click.option("--model", "-m", default=None, help="Model name.")(func)
    func = click.option("--endpoint", "-e", default=None, help="Inference server URL.")(func)
    return func


@click.group()
@click.version_option(version=__version__, prog_name="infill")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to infill.toml configuration file.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Override the configured log level.",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None, log_level: str | None) -> None:
    """Infill: fill-in-middle code completion against local inference servers."""
    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)

    logging.basicConfig(
        level=(log_level or config.logging.level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    ctx.obj["config"] = config


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--offset", type=int, default=None,
    help="Cursor position as a character offset. Defaults to end of file.",
)
@click.option("--max-lines", type=int, default=None, help="Cap on generated lines.")
@_server_options
@click.pass_context
def complete(
    ctx: click.Context,
    file: Path,
    offset: int | None,
    max_lines: int | None,
    endpoint: str | None,
    model: str | None,
    backend: str | None,
) -> None:
    """Complete FILE at the cursor and print the generated text."""
    text = file.read_text(encoding="utf-8")
    cursor = len(text) if offset is None else max(0, min(offset, len(text)))
    inference = _inference_config(ctx, endpoint, model, backend)
    if max_lines is not None:
        inference = replace(inference, max_lines=max_lines)

    result = _run(ctx, lambda service: service.complete(
        text[:cursor], text[cursor:], inference, file_path=str(file),
    ))
    click.echo(result)


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--instruction", "-i", required=True, help="What to change.")
@click.option(
    "--format", "output_format",
    type=click.Choice([f.value for f in RewriteFormat]),
    default=RewriteFormat.TAGGED.value,
    help="Response envelope requested from the model.",
)
@_server_options
@click.pass_context
def rewrite(
    ctx: click.Context,
    file: Path,
    instruction: str,
    output_format: str,
    endpoint: str | None,
    model: str | None,
    backend: str | None,
) -> None:
    """Rewrite the contents of FILE according to an instruction."""
    selected = file.read_text(encoding="utf-8")
    inference = _inference_config(ctx, endpoint, model, backend)
    result = _run(ctx, lambda service: service.rewrite(
        selected, instruction, inference, output_format=RewriteFormat(output_format),
    ))
    click.echo(result)


@cli.command("check-model")
@_server_options
@click.pass_context
def check_model(
    ctx: click.Context, endpoint: str | None, model: str | None, backend: str | None,
) -> None:
    """Check that the server can serve the configured model."""
    inference = _inference_config(ctx, endpoint, model, backend)
    available = _run(ctx, lambda service: service.check_model(inference))
    if available:
        click.echo(f"Model available: {inference.model}")
    else:
        click.echo(f"Model not available: {inference.model}", err=True)
        sys.exit(1)


@cli.command()
@_server_options
@click.pass_context
def pull(
    ctx: click.Context, endpoint: str | None, model: str | None, backend: str | None,
) -> None:
    """Download the configured model onto the server."""
    inference = _inference_config(ctx, endpoint, model, backend)

    def _progress(fraction: float) -> None:
        click.echo(f"\r{inference.model}: {fraction:6.1%}", nl=False, err=True)

    _run(ctx, lambda service: service.download_model(inference, _progress))
    click.echo("", err=True)
    click.echo(f"Pulled {inference.model}")


@cli.command()
@click.argument("endpoint")
def detect(endpoint: str) -> None:
    """Print the backend protocol inferred from ENDPOINT."""
    click.echo(detect_backend_type(endpoint).value)


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
