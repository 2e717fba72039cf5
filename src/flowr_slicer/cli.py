"""flowr-slicer CLI."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import click

from flowr_slicer import __version__
from flowr_slicer.config import SlicerConfig, load_config, load_default_config
from flowr_slicer.coordinator import SlicingCoordinator
from flowr_slicer.document import DocumentStore
from flowr_slicer.errors import Notice, SlicerError
from flowr_slicer.presentation import NO_SLICE, NullPresenter
from flowr_slicer.registry import SessionRegistry
from flowr_slicer.session.base import SessionKind, SessionState, SliceResult

logger = logging.getLogger(__name__)


class _EchoPresenter(NullPresenter):
    """Reports notices on stderr."""

    def on_notice(self, notice: Notice) -> None:
        click.echo(str(notice), err=True)

    def on_session_state_changed(self, kind: SessionKind, state: SessionState) -> None:
        logger.debug("%s session %s", kind.value, state.value)


def _parse_position(text: str) -> tuple[int, int]:
    """Parse a 1-indexed ``LINE:COL`` into a 0-indexed pair."""
    try:
        line, col = (int(p) for p in text.split(":"))
    except ValueError:
        raise click.BadParameter(f"expected LINE:COL, got {text!r}") from None
    if line < 1 or col < 1:
        raise click.BadParameter(f"LINE and COL start at 1, got {text!r}")
    return line - 1, col - 1


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )


async def _with_session(config: SlicerConfig, remote: bool, path: Path | None, action):
    """Open ``path``, establish a session and run ``action(coordinator, uri)``."""
    documents = DocumentStore()
    uri = ""
    if path is not None:
        uri = path.resolve().as_uri()
        documents.open(uri, path.read_text())
    sessions = SessionRegistry(config, _EchoPresenter())
    coordinator = SlicingCoordinator(documents, sessions, sessions.presenter)
    if remote:
        sessions.establish_remote()
    else:
        sessions.establish_local()
    try:
        return await action(coordinator, uri)
    finally:
        await sessions.aclose()


def _run(config: SlicerConfig, remote: bool, path: Path | None, action):
    try:
        return asyncio.run(_with_session(config, remote, path, action))
    except SlicerError as e:
        click.echo(f"error: {e}", err=True)
        raise SystemExit(1)


@click.group()
@click.version_option(__version__, prog_name="flowr-slicer")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), default=None,
              help="Path to flowr-slicer.toml (default: nearest one).")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """Slice R code with flowR."""
    try:
        config = load_config(Path(config_path)) if config_path else load_default_config()
    except SlicerError as e:
        click.echo(f"error: {e}", err=True)
        raise SystemExit(1)
    _setup_logging(verbose or config.verbose_log)
    ctx.obj = config


@main.command()
def lsp() -> None:
    """Start the flowR slicing language server."""
    from flowr_slicer.lsp import main as lsp_main

    lsp_main()


@main.command(name="slice")
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("-p", "--position", "positions", multiple=True, required=True,
              help="Slicing criterion as LINE:COL (1-indexed); repeatable.")
@click.option("--remote", is_flag=True, help="Use the configured flowR server.")
@click.option("--elements", is_flag=True, help="List slice elements instead of the code.")
@click.pass_obj
def slice_cmd(config: SlicerConfig, file: str, positions: tuple[str, ...], remote: bool, elements: bool) -> None:
    """Print the slice of FILE for the given positions."""
    pairs = [_parse_position(p) for p in positions]

    async def action(coordinator: SlicingCoordinator, uri: str) -> SliceResult | None:
        doc = coordinator.documents.get(uri)
        assert doc is not None
        offsets = [doc.offset_at(line, col) for line, col in pairs]
        return await coordinator.slice_once(uri, offsets)

    result = _run(config, remote, Path(file), action)
    if result is None:
        click.echo(NO_SLICE)
        return
    if elements:
        for element in result.elements:
            click.echo(f"{element.id}\t{element.range}")
    else:
        click.echo(result.code)


@main.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--remote", is_flag=True, help="Use the configured flowR server.")
@click.pass_obj
def dataflow(config: SlicerConfig, file: str, remote: bool) -> None:
    """Print the dataflow graph of FILE as mermaid."""

    async def action(coordinator: SlicingCoordinator, uri: str) -> str | None:
        return await coordinator.show_dataflow(uri)

    diagram = _run(config, remote, Path(file), action)
    if diagram:
        click.echo(diagram)


@main.command()
@click.option("--remote", is_flag=True, help="Check the configured flowR server.")
@click.pass_obj
def status(config: SlicerConfig, remote: bool) -> None:
    """Start a session and report the engine versions."""

    async def action(coordinator: SlicingCoordinator, uri: str) -> dict[str, str]:
        session = await coordinator.sessions.get_session()
        assert session.handshake is not None
        return {"endpoint": session.description, "state": session.state.value, **session.handshake.versions}

    info = _run(config, remote, None, action)
    click.echo(f"{info['state']} {info['endpoint']}")
    click.echo(f"flowR {info['flowr'] or 'unknown'}, R {info['r'] or 'unknown'}")
