"""sitepipe CLI - main entry point and command registration hub."""
# ruff: noqa: E402 - commands imported after cli group definition

import click

from sitepipe import __version__


@click.group()
@click.version_option(version=__version__, prog_name="sitepipe")
@click.help_option("-h", "--help")
def cli():
    """sitepipe - declarative site publishing pipelines

    \b
    QUICK START:
      sitepipe run pipeline.json          # Run every step
      sitepipe run pipeline.json --dev    # Fast incremental dev run
      sitepipe tasks                      # List known tasks

    \b
    For detailed options: sitepipe <command> --help"""
    pass


from sitepipe.commands.run import run
from sitepipe.commands.tasks import tasks

cli.add_command(run)
cli.add_command(tasks)


def main():
    """Main entry point for console script."""
    cli()


if __name__ == "__main__":
    main()
