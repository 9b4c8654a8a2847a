"""
Output utilities for the CLI.

Tables, JSON and colored status lines rendered with rich.
"""

import json
import sys
from typing import Dict, List, Any, Optional

from rich.console import Console
from rich.table import Table
from rich.json import JSON
from rich.panel import Panel
from rich.tree import Tree
from tabulate import tabulate

# Global console instance
console = Console()


def print_error(message: str, exit_code: Optional[int] = None):
    """Print error message in red and optionally exit."""
    console.print(f"[bold red]Error:[/bold red] {message}")
    if exit_code is not None:
        sys.exit(exit_code)


def print_success(message: str):
    """Print success message in green."""
    console.print(f"[bold green]Success:[/bold green] {message}")


def print_info(message: str):
    """Print info message in blue."""
    console.print(f"[bold blue]Info:[/bold blue] {message}")


def print_warning(message: str):
    """Print warning message in yellow."""
    console.print(f"[bold yellow]Warning:[/bold yellow] {message}")


def print_json(data: Any, title: Optional[str] = None):
    """Print data as formatted JSON."""
    if title:
        console.print(f"\n[bold]{title}[/bold]")
    json_str = json.dumps(data, indent=2, default=str)
    console.print(JSON(json_str))


def print_table(data: List[Dict[str, Any]], title: Optional[str] = None, format_style: str = "rich"):
    """
    Print data as a formatted table.

    Args:
        data: List of dictionaries to display
        title: Optional table title
        format_style: "rich" for Rich tables, "simple" for tabulate
    """
    if not data:
        print_info("No data to display")
        return

    if format_style == "rich":
        table = Table(show_header=True, header_style="bold magenta")
        columns = list(data[0].keys())
        for column in columns:
            table.add_column(column.replace('_', ' ').title())
        for row in data:
            table.add_row(*[str(row.get(col, '')) for col in columns])
        if title:
            console.print(f"\n[bold]{title}[/bold]")
        console.print(table)
    else:
        if title:
            print(f"\n{title}")
            print("=" * len(title))
        print(tabulate(data, headers="keys", tablefmt="grid"))


def print_run_result(result: Dict[str, Any]):
    """Render one batch result: output panels plus a status line."""
    if result.get("output"):
        console.print(Panel(result["output"].rstrip("\n"), title="stdout", border_style="green"))
    stderr = result.get("stderr")
    if stderr:
        console.print(Panel(stderr.rstrip("\n"), title="stderr", border_style="red"))

    if result.get("success"):
        status = "[bold green]OK[/bold green]"
    elif result.get("errorKind"):
        status = f"[bold red]{str(result['errorKind']).upper()}[/bold red]"
    else:
        status = "[bold yellow]FAILED[/bold yellow]"
    console.print(
        f"{status} exit={result.get('exitCode')} time={result.get('executionTime')}ms"
        + (" (output truncated)" if result.get("truncated") else "")
    )
    if result.get("errorKind") and result.get("error"):
        console.print(f"[red]{result['error']}[/red]")


def print_health_status(health_data: Dict[str, Any]):
    """Print health status with color coding."""
    status = health_data.get("status", "unknown")

    if status == "healthy":
        status_color = "bold green"
    elif status == "degraded":
        status_color = "bold yellow"
    elif status == "unhealthy":
        status_color = "bold red"
    else:
        status_color = "bold white"

    console.print(f"Overall Status: [{status_color}]{status.upper()}[/{status_color}]")

    if "components" in health_data:
        console.print("\n[bold]Component Status:[/bold]")
        components_tree = Tree("Components")
        for component, info in health_data["components"].items():
            comp_status = info.get("status", "unknown")
            if comp_status in ("ok", "healthy"):
                comp_color = "green"
            elif comp_status == "degraded":
                comp_color = "yellow"
            else:
                comp_color = "red"
            branch = components_tree.add(f"[{comp_color}]{component}[/{comp_color}]")
            for key, value in info.items():
                if key != "status":
                    branch.add(f"{key}: {value}")
        console.print(components_tree)
