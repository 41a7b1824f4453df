"""Entry point of the downtime-sentinel command."""

import logging

import click

from .. import __version__
from .schedule import validate, preview, run


@click.group()
@click.version_option(__version__, prog_name="downtime-sentinel")
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
def cli(verbose: bool):
    """Recurring maintenance windows for monitored hosts and services."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )


cli.add_command(validate)
cli.add_command(preview)
cli.add_command(run)


def main():
    """Main CLI entry point."""
    cli()


if __name__ == "__main__":
    main()
