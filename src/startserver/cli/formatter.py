import json
import typer
from typing import Any, List
from pydantic import BaseModel
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from startserver.utils.diagnostics import SupervisorDiagnostic

# Create a stderr console for logging
error_console = Console(stderr=True)

SEVERITY_STYLES = {
    "debug": "dim",
    "info": "white",
    "warning": "yellow",
    "error": "red",
    "critical": "bold red",
    "success": "green",
}

class OutputFormatter:
    """
    Handles output formatting for the supervisor and its CLI.
    Ensures separation of concerns between System Logs (stderr) and Data (stdout).
    """

    verbose = False

    @staticmethod
    def log(message: str, severity: str = "info") -> None:
        """
        Print system messages to stderr with color coding.
        """
        if severity == "debug" and not OutputFormatter.verbose:
            return

        style = SEVERITY_STYLES.get(severity, "white")
        prefix = escape("[startserver]")
        error_console.print(f"[{style}]{prefix} {escape(message)}[/{style}]", highlight=False)

    @staticmethod
    def report_event(event: Any) -> None:
        """
        Render a SupervisorEvent (or anything with kind/message/severity) as a log line.
        """
        OutputFormatter.log(event.message, severity=getattr(event, "severity", "info"))

    @staticmethod
    def report_error(error: Exception) -> None:
        code = getattr(error, "error_code", "ERR_STARTSERVER")
        OutputFormatter.log(f"ERROR: [{code}] {error}", severity="error")

    @staticmethod
    def print_diagnostics(diagnostics: List[SupervisorDiagnostic]) -> None:
        """
        Prints a table of build and supervisor diagnostics.
        """
        if not diagnostics:
            return

        table = Table(title="startserver Diagnostics", border_style="red", header_style="bold red")
        table.add_column("Severity", style="bold")
        table.add_column("Code")
        table.add_column("Message")
        table.add_column("Location")

        for diag in diagnostics:
            color = "red"
            if diag.severity == "warning":
                color = "yellow"
            elif diag.severity == "critical":
                color = "bold red"

            loc = f"{diag.file_path}"
            if diag.line_number:
                loc += f":{diag.line_number}"

            table.add_row(
                f"[{color}]{diag.severity.upper()}[/{color}]",
                diag.error_code,
                diag.message,
                loc
            )

        error_console.print(table)
        error_console.print() # spacing

    @staticmethod
    def print_data(data: Any) -> None:
        """
        Print a command result to stdout.
        Strings are echoed as-is, everything else as indented JSON.
        """
        if isinstance(data, str):
            typer.echo(data)
            return

        def json_serializer(obj):
            if isinstance(obj, BaseModel):
                return obj.model_dump(mode='json')
            if hasattr(obj, "isoformat"):
                return obj.isoformat()
            return str(obj)

        try:
            output = json.dumps(data, indent=2, default=json_serializer)
            typer.echo(output)
        except TypeError as e:
            OutputFormatter.log(f"JSON Serialization failed: {e}", severity="error")
            typer.echo(str(data))
