"""
Command-line entry point.

    panbackup [CONFIG] [--debug] [--log-file PATH] [--schedule [--cron EXPR]]

Exit codes: 0 all entries succeeded, 1 at least one entry failed,
2 configuration error.
"""

import logging
from typing import Optional

import typer

from panbackup import __version__, configure_logging
from panbackup.config import DEFAULT_CONFIG_PATH, ConfigError, load_config
from panbackup.backup.orchestrator import run_backups
from panbackup.scheduler import run_scheduled


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ENTRY_FAILED = 1
EXIT_CONFIG_ERROR = 2

app = typer.Typer(help="Archive local data and upload it to Baidu Netdisk and Cloud189", add_completion=False)


def _version_callback(value: bool):
    if value:
        typer.echo(f"panbackup {__version__}")
        raise typer.Exit()


@app.command()
def backup(
    config: str = typer.Argument(DEFAULT_CONFIG_PATH, help="Path to the TOML configuration"),
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Also write logs to this file (rotated)"),
    schedule: bool = typer.Option(False, "--schedule", help="Keep running and back up on a cron schedule"),
    cron: Optional[str] = typer.Option(None, "--cron", help="Crontab expression; defaults to [app].schedule"),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit"
    ),
):
    """Run every configured backup entry once, or on a schedule."""
    configure_logging(debug=debug, log_file=log_file)

    try:
        loaded = load_config(config)
    except ConfigError as e:
        logger.error(str(e))
        raise typer.Exit(code=EXIT_CONFIG_ERROR)

    if schedule or cron:
        expression = cron or loaded.app.schedule
        if not expression:
            logger.error("No schedule given: pass --cron or set [app].schedule")
            raise typer.Exit(code=EXIT_CONFIG_ERROR)
        try:
            run_scheduled(loaded, expression, prompt=typer.prompt)
        except ConfigError as e:
            logger.error(str(e))
            raise typer.Exit(code=EXIT_CONFIG_ERROR)
        raise typer.Exit(code=EXIT_OK)

    summary = run_backups(loaded, prompt=typer.prompt)
    raise typer.Exit(code=EXIT_ENTRY_FAILED if summary.failed else EXIT_OK)


def main():
    app()


if __name__ == '__main__':
    main()
