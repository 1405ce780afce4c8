"""Entry-point for the lecture audio service."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Optional, Tuple

import typer
import uvicorn
from rich import box
from rich.console import Console
from rich.table import Table
from rich.text import Text

from lecture_audio.bootstrap import initialize_app
from lecture_audio.logging_utils import build_log_handlers, configure_logging
from lecture_audio.services.files import AudioFileStore
from lecture_audio.services.storage import LectureRepository
from lecture_audio.web import create_app


LOGGER = logging.getLogger("lecture_audio.cli")


cli = typer.Typer(add_completion=False, help="Lecture audio service commands")


DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def _prepare_logging(data_root: Path, *, verbose: bool = False) -> None:
    configure_logging(
        logging.DEBUG if verbose else logging.INFO,
        handlers=build_log_handlers(data_root),
    )


@cli.callback(invoke_without_command=True)
def main(ctx: typer.Context) -> None:
    """Launch the web server when no explicit command is provided."""

    if ctx.invoked_subcommand is None:
        ctx.invoke(serve, host=DEFAULT_HOST, port=DEFAULT_PORT, root_path=None, verbose=False)


@cli.command()
def serve(
    host: str = typer.Option(DEFAULT_HOST, help="Host interface for the web server"),
    port: int = typer.Option(DEFAULT_PORT, help="Port for the web server"),
    root_path: Optional[str] = typer.Option(
        None,
        help="Prefix the application expects when mounted behind a proxy",
        envvar="LECTURE_AUDIO_ROOT_PATH",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    """Run the FastAPI audio delivery server."""

    app_config = initialize_app()
    _prepare_logging(app_config.data_root, verbose=verbose)

    repository = LectureRepository(app_config)
    app = create_app(repository, config=app_config, root_path=root_path)

    server_config = uvicorn.Config(
        app,
        host=host,
        port=port,
        log_config=None,
        root_path=root_path or "",
    )
    server = uvicorn.Server(server_config)
    app.state.server = server
    LOGGER.info("Starting server on http://%s:%s", host, port)
    server.run()


def _collect_audio_problems(
    repository: LectureRepository, file_store: AudioFileStore
) -> List[Tuple[str, str]]:
    problems: List[Tuple[str, str]] = []
    for lecture in repository.iter_lectures():
        label = f"#{lecture.id} {lecture.display_title}"
        if not lecture.has_audio:
            if not lecture.audio_url:
                problems.append((label, "no audio file attached"))
            continue
        file_ref = lecture.audio_file_name or ""
        if not file_store.exists(file_ref):
            problems.append((label, f"audio file '{file_ref}' is missing"))
            continue
        actual = file_store.stat(file_store.resolve_path(file_ref)).size
        if lecture.file_size and lecture.file_size != actual:
            problems.append(
                (label, f"stored size {lecture.file_size} differs from file size {actual}")
            )
    return problems


@cli.command("check-audio")
def check_audio() -> None:
    """Report lectures whose audio files are missing or inconsistent."""

    config = initialize_app()
    _prepare_logging(config.data_root)

    repository = LectureRepository(config)
    file_store = AudioFileStore(config.upload_root)
    problems = _collect_audio_problems(repository, file_store)

    console = Console()
    if not problems:
        console.print("All lecture audio files are present.")
        return

    table = Table(box=box.SIMPLE, show_edge=False)
    table.add_column("Lecture", style="bold")
    table.add_column("Problem")
    for label, problem in problems:
        table.add_row(Text(label), Text(problem))
    console.print(f"Found {len(problems)} problem(s):", markup=False, highlight=False)
    console.print(table)
    raise typer.Exit(code=1)


if __name__ == "__main__":
    cli()
