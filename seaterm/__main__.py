"""
seaterm console entry point.

Usage:
    seaterm
    seaterm --debug --log-file seaterm.log
    seaterm --local-root ~/Downloads
    seaterm --local-root ~/Downloads --save-config
    python -m seaterm --config ./config.json
"""

import logging
from pathlib import Path

import click

from . import __version__
from .config import SettingsManager
from .session.ssh import SSHSession
from .commands.dispatcher import CommandDispatcher
from .terminal.controller import TerminalController
from .terminal.console import run_console

logger = logging.getLogger(__name__)


def configure_logging(debug: bool, log_file: str = None) -> None:
    """Console logging stays quiet unless --debug; a log file gets everything."""
    handlers = []
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    else:
        handlers.append(logging.StreamHandler())

    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=handlers,
    )
    logging.getLogger("paramiko").setLevel(logging.INFO if debug else logging.WARNING)


@click.command()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None,
              help="Settings file (default: ~/.seaterm/config.json)")
@click.option("--debug", is_flag=True, help="Verbose logging")
@click.option("--log-file", type=click.Path(dir_okay=False), default=None,
              help="Write logs to this file instead of stderr")
@click.option("--local-root", type=click.Path(file_okay=False), default=None,
              help="Base directory for relative local paths")
@click.option("--reset-config", is_flag=True,
              help="Start from default settings instead of the config file")
@click.option("--save-config", is_flag=True,
              help="Write the effective settings to the config file and exit")
@click.version_option(__version__, prog_name="seaterm")
def cli(config_path, debug, log_file, local_root, reset_config, save_config):
    """Interactive terminal with SSH, remote exec and SFTP."""
    configure_logging(debug, log_file)

    manager = SettingsManager(Path(config_path) if config_path else None)
    if reset_config:
        manager.reset()
    if local_root:
        root = Path(local_root).expanduser()
        if not root.is_dir():
            raise click.BadParameter(f"{root} is not a directory", param_hint="--local-root")
        manager.update(local_root=str(root))

    if save_config:
        if not manager.save():
            raise click.ClickException(f"Could not write {manager.config_path}")
        click.echo(f"Settings saved to {manager.config_path}")
        return

    settings = manager.settings

    logger.info(f"seaterm {__version__} starting (settings: {manager.config_path})")

    session = SSHSession(settings)
    dispatcher = CommandDispatcher(session, settings)
    controller = TerminalController(session, dispatcher, settings)
    run_console(controller)


def main():
    """Entry point for console script."""
    cli()


if __name__ == "__main__":
    main()
