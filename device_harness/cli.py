"""CLI entry point for device-harness.

Each subcommand is one orchestration variant; the process exit code is the
outcome's ExitCode.
"""

import asyncio
import logging
from typing import Dict, List, Optional

import typer
from rich.console import Console
from rich.table import Table

from .config import HarnessConfig
from .error_handler import ExitCode
from .initialization import TARGETS, create_platform, initialize_components
from .orchestrator import Outcome
from .tool_models import OrchestrationRun
from .variants import create_orchestrator

app = typer.Typer(
    name="device-harness",
    help="Install, run and test apps on Android devices and Apple simulators.",
    no_args_is_help=True,
)
console = Console(stderr=True)

COMMANDS = {
    "install": "Install the app (uninstalling any previous copy first).",
    "uninstall": "Uninstall the app.",
    "run": "Install, run and uninstall the app, checking its exit code.",
    "just-run": "Run an already installed app, checking its exit code.",
    "test": "Install the app, run its tests and uninstall it.",
    "just-test": "Run the tests of an already installed app.",
    "reset-simulator": "Erase and reboot a simulator or emulator.",
}


def parse_pairs(values: Optional[List[str]], option: str) -> Dict[str, str]:
    """Parse repeated KEY=VALUE options."""
    pairs: Dict[str, str] = {}
    for value in values or []:
        key, sep, rest = value.partition("=")
        if not sep or not key:
            raise typer.BadParameter(f"expected KEY=VALUE, got '{value}'", param_hint=option)
        pairs[key] = rest
    return pairs


def render_outcome(variant: str, outcome: Outcome) -> None:
    table = Table(title=f"device-harness {variant}", show_header=False)
    table.add_column("Field", style="bold")
    table.add_column("Value")
    color = "green" if outcome.succeeded else "red"
    table.add_row("Exit code", f"[{color}]{outcome.exit_code.name} ({int(outcome.exit_code)})[/]")
    if outcome.message:
        table.add_row("Message", outcome.message)
    if outcome.issue_link:
        table.add_row("Known issue", outcome.issue_link)
    for key in ("total", "passed", "failed", "app_exit_code"):
        if key in outcome.details:
            table.add_row(key.replace("_", " ").capitalize(), str(outcome.details[key]))
    if "log_directory" in outcome.details:
        table.add_row("Logs", outcome.details["log_directory"])
    console.print(table)


async def orchestrate(variant: str, run: OrchestrationRun, config: HarnessConfig) -> Outcome:
    components = initialize_components(config)
    platform = create_platform(run.target, components)
    orchestrator = create_orchestrator(variant, platform, config, components["knowledge_base"])
    return await orchestrator.run(run)


def _make_command(variant: str):
    def command(
        app_arguments: Optional[List[str]] = typer.Argument(
            None, help="Arguments passed to the app (after --)"
        ),
        target: str = typer.Option(
            "android", "--target", "-t", help=f"One of: {', '.join(TARGETS)}"
        ),
        app_id: str = typer.Option(
            "", "--app-id", "-i", help="Package name or bundle identifier"
        ),
        app: Optional[str] = typer.Option(None, "--app", "-a", help="Path to the .apk or .app"),
        device: Optional[str] = typer.Option(
            None, "--device", "-d", help="Device name or UDID/serial"
        ),
        os_version: Optional[str] = typer.Option(None, "--os-version", help="Required OS version"),
        device_arch: Optional[str] = typer.Option(
            None, "--device-arch", help="Required device architecture"
        ),
        api_level: Optional[int] = typer.Option(None, "--api-level", help="Required API level"),
        instrumentation: Optional[str] = typer.Option(
            None, "--instrumentation", help="Android instrumentation class"
        ),
        instrumentation_arg: Optional[List[str]] = typer.Option(
            None, "--arg", help="Instrumentation argument KEY=VALUE (repeatable)"
        ),
        timeout: float = typer.Option(900.0, "--timeout", help="Run timeout in seconds"),
        launch_timeout: float = typer.Option(
            300.0, "--launch-timeout", help="Seconds allowed until the app connects"
        ),
        reset_simulator: bool = typer.Option(
            False, "--reset-simulator", help="Erase the simulator/emulator around the run"
        ),
        expected_exit_code: int = typer.Option(
            0, "--expected-exit-code", help="App exit code counted as success"
        ),
        env: Optional[List[str]] = typer.Option(
            None, "--env", "-e", help="App environment variable KEY=VALUE (repeatable)"
        ),
        output_directory: Optional[str] = typer.Option(
            None, "--output-directory", "-o", help="Directory for logs and results"
        ),
        enable_lldb: bool = typer.Option(False, "--enable-lldb", help="Run the app under lldb"),
        verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    ) -> None:
        if verbose:
            logging.getLogger("device_harness").setLevel(logging.DEBUG)

        if target.lower() not in TARGETS:
            console.print(f"[red]Unknown target '{target}', expected one of: {', '.join(TARGETS)}[/]")
            raise typer.Exit(code=int(ExitCode.INVALID_ARGUMENTS))
        if not app_id and variant != "reset-simulator":
            console.print("[red]--app-id is required[/]")
            raise typer.Exit(code=int(ExitCode.INVALID_ARGUMENTS))

        try:
            run = OrchestrationRun(
                target=target.lower(),
                app_id=app_id or None,
                app_path=app,
                device_name=device,
                os_version=os_version,
                device_arch=device_arch,
                api_level=api_level,
                instrumentation=instrumentation,
                instrumentation_args=parse_pairs(instrumentation_arg, "--arg"),
                timeout=timeout,
                launch_timeout=launch_timeout,
                reset_simulator=reset_simulator,
                expected_exit_code=expected_exit_code,
                env=parse_pairs(env, "--env"),
                app_arguments=list(app_arguments or []),
                output_directory=output_directory,
                enable_lldb=enable_lldb,
            )
        except typer.BadParameter as e:
            console.print(f"[red]{e}[/]")
            raise typer.Exit(code=int(ExitCode.INVALID_ARGUMENTS))

        config = HarnessConfig.from_env()
        outcome = asyncio.run(orchestrate(variant, run, config))
        render_outcome(variant, outcome)
        raise typer.Exit(code=int(outcome.exit_code))

    command.__name__ = variant.replace("-", "_")
    command.__doc__ = COMMANDS[variant]
    return command


for _variant in COMMANDS:
    app.command(name=_variant)(_make_command(_variant))


if __name__ == "__main__":
    app()
