"""List the task discriminators the dispatcher knows about."""

import json

import click
from rich.table import Table

from sitepipe.pipeline.ui import console, print_header


def task_catalog() -> list[dict[str, str]]:
    """One row per task: its name and the engine kind it needs, if any."""
    from sitepipe.pipeline.cache import is_cacheable
    from sitepipe.pipeline.dispatch import TASK_COLLABORATORS, TASK_HANDLERS

    return [
        {
            "task": task,
            "kind": TASK_COLLABORATORS.get(task, "in-repo"),
            "cacheable": "yes" if is_cacheable(task) else "no",
        }
        for task in sorted(TASK_HANDLERS)
    ]


@click.command("tasks")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def tasks(as_json: bool) -> None:
    """Show every pipeline task and the engine it delegates to.

    Tasks marked in-repo run without any engine; the others need the
    matching collaborator from the --engines factory.
    """
    catalog = task_catalog()
    if as_json:
        click.echo(json.dumps(catalog, indent=2))
        return

    print_header("PIPELINE TASKS")
    table = Table(expand=False)
    table.add_column("Task", style="task", no_wrap=True)
    table.add_column("Runs with")
    table.add_column("Cacheable", justify="center")
    for row in catalog:
        table.add_row(row["task"], row["kind"], row["cacheable"])
    console.print(table)
