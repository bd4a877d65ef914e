import json
import logging
from pathlib import Path
from typing import Optional

import typer  # type: ignore
import yaml
from pydantic import ValidationError
from rich.console import Console  # type: ignore
from rich.logging import RichHandler  # type: ignore
from rich.panel import Panel  # type: ignore
from rich.table import Table  # type: ignore
from typing_extensions import Annotated

import loopalgo
from loopalgo.core.algorithm import AlgorithmEffectsOptions, AlgorithmOutput, run as run_algorithm
from loopalgo.core.carbs.absorption import CarbAbsorptionModel
from loopalgo.core.insulin.models import ExponentialInsulinModelPreset, InsulinType
from loopalgo.utils.run_io import serialize_output, write_json, write_prediction_csv
from loopalgo.validation import (
    build_algorithm_input,
    format_validation_error,
    input_warnings,
    load_algorithm_input_model,
)

app = typer.Typer(help="loopalgo CLI - closed-loop glucose prediction and insulin dose recommendation.")

_EFFECT_NAMES = {
    "carbs": AlgorithmEffectsOptions.CARBS,
    "insulin": AlgorithmEffectsOptions.INSULIN,
    "momentum": AlgorithmEffectsOptions.MOMENTUM,
    "retrospection": AlgorithmEffectsOptions.RETROSPECTION,
}


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(show_path=False)],
        force=True,
    )


def _parse_effects(effects: Optional[str], console: Console) -> AlgorithmEffectsOptions:
    if not effects:
        return AlgorithmEffectsOptions.ALL
    options = AlgorithmEffectsOptions(0)
    for name in effects.split(","):
        name = name.strip().lower()
        if name not in _EFFECT_NAMES:
            console.print(f"[bold red]Error: Unknown effect '{name}'. Choose from {', '.join(_EFFECT_NAMES)}.[/bold red]")
            raise typer.Exit(code=1)
        options |= _EFFECT_NAMES[name]
    return options


def _load_model(input_path: Path, console: Console):
    if not input_path.is_file():
        console.print(f"[bold red]Error: Input file '{input_path}' not found.[/bold red]")
        raise typer.Exit(code=1)
    try:
        return load_algorithm_input_model(input_path)
    except ValidationError as e:
        console.print("[bold red]Input validation failed:[/bold red]")
        for line in format_validation_error(e):
            console.print(f"- {line}")
        raise typer.Exit(code=1)
    except (ValueError, yaml.YAMLError) as e:
        console.print(f"[bold red]Error: Could not parse '{input_path}': {e}[/bold red]")
        raise typer.Exit(code=1)


def _print_summary(output: AlgorithmOutput, console: Console) -> None:
    table = Table(title="Prediction Summary", show_lines=False)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right")
    if output.predicted_glucose:
        first, last = output.predicted_glucose[0], output.predicted_glucose[-1]
        lowest = min(output.predicted_glucose, key=lambda value: value.quantity)
        table.add_row("Starting glucose (mg/dL)", f"{first.quantity:.1f}")
        table.add_row("Eventual glucose (mg/dL)", f"{last.quantity:.1f}")
        table.add_row("Minimum glucose (mg/dL)", f"{lowest.quantity:.1f} at {lowest.start_date:%H:%M}")
    if output.active_insulin is not None:
        table.add_row("Active insulin (U)", f"{output.active_insulin:.2f}")
    if output.active_carbs is not None:
        table.add_row("Active carbs (g)", f"{output.active_carbs:.1f}")
    if output.effects.total_glucose_correction_effect is not None:
        table.add_row("Retrospective correction (mg/dL)", f"{output.effects.total_glucose_correction_effect:.1f}")
    console.print(table)

    if output.error is not None:
        console.print(Panel(output.error.message, title=f"No recommendation: {output.error.code}", border_style="red"))
        return
    if output.recommendation is None:
        return
    recommendation = output.recommendation
    lines = []
    if recommendation.manual is not None:
        lines.append(f"Manual bolus: {recommendation.manual.amount:.2f} U")
        if recommendation.manual.notice is not None:
            lines.append(f"Notice: {recommendation.manual.notice.type.value}")
    if recommendation.automatic is not None:
        basal = recommendation.automatic.basal_adjustment
        if basal is not None:
            minutes = basal.duration.total_seconds() / 60
            lines.append(f"Temp basal: {basal.units_per_hour:.2f} U/hr for {minutes:.0f} min")
        if recommendation.automatic.bolus_units is not None:
            lines.append(f"Automatic bolus: {recommendation.automatic.bolus_units:.2f} U")
    console.print(Panel("\n".join(lines), title="Recommendation", border_style="green"))


@app.command()
def run(
    input_path: Annotated[Path, typer.Argument(help="Algorithm input fixture (JSON or YAML)")],
    output: Annotated[Optional[Path], typer.Option(help="Write the full result as JSON to this path")] = None,
    csv: Annotated[Optional[Path], typer.Option(help="Write the prediction and its effects as CSV to this path")] = None,
    effects: Annotated[Optional[str], typer.Option(help="Comma separated effects to include (carbs,insulin,momentum,retrospection)")] = None,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Enable debug logging")] = False,
):
    """
    Run the prediction and dose recommendation for an input fixture.
    """
    console = Console()
    _configure_logging(verbose)
    effect_options = _parse_effects(effects, console)
    model = _load_model(input_path, console)
    for warning in input_warnings(model):
        console.print(f"[yellow]Warning: {warning}[/yellow]")

    result = run_algorithm(build_algorithm_input(model), effect_options=effect_options)
    _print_summary(result, console)

    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        write_json(output, serialize_output(result))
        console.print(f"Results written to: [link={output.resolve()}]{output}[/link]")
    if csv is not None:
        csv.parent.mkdir(parents=True, exist_ok=True)
        write_prediction_csv(csv, result)
        console.print(f"Prediction written to: [link={csv.resolve()}]{csv}[/link]")

    if result.error is not None:
        raise typer.Exit(code=2)


@app.command()
def validate(
    input_path: Annotated[Path, typer.Argument(help="Algorithm input fixture (JSON or YAML)")],
):
    """Validate an input fixture for missing keys and out-of-range values."""
    console = Console()
    model = _load_model(input_path, console)
    warnings = input_warnings(model)
    if warnings:
        console.print("[yellow]Warnings:[/yellow]")
        for warning in warnings:
            console.print(f"- {warning}")
    console.print(
        f"[green]Input is valid.[/green] {len(model.glucoseHistory)} glucose samples, "
        f"{len(model.doses)} doses, {len(model.carbEntries)} carb entries."
    )


@app.command()
def presets():
    """List the insulin model presets and carb absorption models."""
    console = Console()
    table = Table(title="Insulin Model Presets", show_lines=False)
    table.add_column("Preset", style="cyan")
    table.add_column("Action Duration (min)", justify="right")
    table.add_column("Peak (min)", justify="right")
    table.add_column("Delay (min)", justify="right")
    table.add_column("Insulin Types")
    for preset in ExponentialInsulinModelPreset:
        types = ", ".join(item.value for item in InsulinType if item.preset is preset)
        table.add_row(
            preset.value,
            f"{preset.action_duration.total_seconds() / 60:.0f}",
            f"{preset.peak_activity_time.total_seconds() / 60:.0f}",
            f"{preset.delay.total_seconds() / 60:.0f}",
            types or "-",
        )
    console.print(table)

    carb_table = Table(title="Carb Absorption Models", show_lines=False)
    carb_table.add_column("Model", style="cyan")
    carb_table.add_column("Curve")
    carb_table.add_column("Initial Overrun", justify="right")
    carb_table.add_column("Adaptive Rate")
    for carb_model in CarbAbsorptionModel:
        settings = carb_model.settings
        carb_table.add_row(
            carb_model.value,
            type(settings.curve).__name__,
            f"{settings.initial_absorption_time_overrun:.1f}",
            "yes" if settings.adaptive_absorption_rate else "no",
        )
    console.print(carb_table)


@app.command()
def version():
    """Show the installed loopalgo version."""
    console = Console()
    console.print(json.dumps({"loopalgo": loopalgo.__version__}))


if __name__ == "__main__":
    app()
