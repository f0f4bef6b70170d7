"""HPA operator CLI.

Usage:
    hpa-operator run                          # Run the operator
    hpa-operator render deployment.yaml       # Print the autoscaler a Deployment yields
    hpa-operator check-templates              # Validate every metric template
"""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path

import click
import yaml
from pydantic import ValidationError

from .config import DEFAULT_ANNOTATION_PREFIX, DEFAULT_TEMPLATES_DIR, Config, ConfigurationError
from .models import Workload
from .reconciler import compose_autoscaler
from .templates import TemplateLoadError, TemplateResolver

templates_dir_option = click.option(
    "--templates-dir",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="HPA_TEMPLATES",
    default=DEFAULT_TEMPLATES_DIR,
    show_default=True,
    help="Directory holding metric templates.",
)


def _offline_config(templates_dir: Path, annotation_prefix: str) -> Config:
    try:
        return Config(templates_dir=templates_dir, annotation_prefix=annotation_prefix)
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(package_name="hpa-operator")
def cli() -> None:
    """Derive HorizontalPodAutoscalers from Deployment annotations."""


@cli.command()
def run() -> None:
    """Run the operator (configured through environment variables)."""
    from .main import main as operator_main

    sys.exit(asyncio.run(operator_main()))


@cli.command()
@click.argument("manifest", type=click.File("r"))
@templates_dir_option
@click.option(
    "--annotation-prefix",
    envvar="ANNOTATION_PREFIX",
    default=DEFAULT_ANNOTATION_PREFIX,
    show_default=True,
)
@click.option(
    "--output", "-o", type=click.Choice(["yaml", "json"]), default="yaml", show_default=True
)
def render(manifest, templates_dir: Path, annotation_prefix: str, output: str) -> None:
    """Print the autoscaler the operator would apply for a Deployment MANIFEST."""
    config = _offline_config(templates_dir, annotation_prefix)

    try:
        raw = yaml.safe_load(manifest)
    except yaml.YAMLError as e:
        raise click.ClickException(f"Invalid YAML in {manifest.name}: {e}") from e
    if not isinstance(raw, dict):
        raise click.ClickException(f"Manifest must be a YAML mapping: {manifest.name}")

    try:
        workload = Workload.from_manifest(raw)
    except ValidationError as e:
        raise click.ClickException(f"Invalid Deployment manifest: {e}") from e

    autoscaler = compose_autoscaler(workload, config, TemplateResolver(config.templates_dir))
    if autoscaler is None:
        raise click.ClickException(
            f"No metric template resolved for {workload.key} "
            f"(annotation {config.template_annotation})"
        )

    body = autoscaler.to_manifest()
    if output == "json":
        click.echo(json.dumps(body, indent=2))
    else:
        click.echo(yaml.safe_dump(body, sort_keys=False), nl=False)


@cli.command("check-templates")
@templates_dir_option
def check_templates(templates_dir: Path) -> None:
    """Validate every metric template in the template directory."""
    config = _offline_config(templates_dir, DEFAULT_ANNOTATION_PREFIX)
    resolver = TemplateResolver(config.templates_dir)

    names = resolver.available()
    if not names:
        click.echo(f"No templates found in {config.templates_dir}")
        return

    failures = 0
    for name in names:
        try:
            metric = resolver.resolve(name)
        except TemplateLoadError as e:
            failures += 1
            click.secho(f"FAIL  {name}: {e}", fg="red")
            continue
        click.secho(f"OK    {name} ({metric.type})", fg="green")

    if failures:
        raise click.ClickException(f"{failures} of {len(names)} templates failed to load")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
