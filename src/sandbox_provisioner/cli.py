"""sandbox-provisioner CLI: list flavors, plan and run image builds."""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer

from sandbox_provisioner.builds.orchestrator import BuildOrchestrator
from sandbox_provisioner.catalog.catalog import default_catalog
from sandbox_provisioner.catalog.loader import load_image_spec
from sandbox_provisioner.config import load_settings
from sandbox_provisioner.errors import ProvisionerError
from sandbox_provisioner.images.binder import image_config, render_dockerfile
from sandbox_provisioner.images.resolver import resolve
from sandbox_provisioner.logging import configure_logging
from sandbox_provisioner.types import ImageSpec

app = typer.Typer(name="sandbox-provisioner", help="Build reproducible sandbox images")


@app.callback()
def main(
    json_logs: bool = typer.Option(False, "--json-logs", help="Force JSON log lines on stderr"),
) -> None:
    settings = load_settings()
    configure_logging(settings.log_level, json_output=json_logs or None)


def _load_spec(spec: str) -> ImageSpec:
    path = Path(spec)
    if path.suffix in (".toml", ".json"):
        if not path.exists():
            typer.echo(f"Error: File not found: {spec}", err=True)
            raise typer.Exit(1)
        return load_image_spec(path)
    return default_catalog().image(spec)


@app.command("images")
def list_images() -> None:
    """List the built-in image flavors."""
    for image in default_catalog().images():
        tools = ", ".join(f"{t.tool_name} {t.version}" for t in image.tools)
        typer.echo(f"{image.name}\t{image.base_image}\t{tools}")


@app.command("plan")
def plan(
    spec: str = typer.Argument(..., help="Spec document (.toml/.json) or built-in flavor name"),
) -> None:
    """Print the ordered steps a spec resolves to."""
    try:
        steps = resolve(_load_spec(spec))
    except ProvisionerError as e:
        typer.echo(json.dumps(e.to_dict(), indent=2), err=True)
        raise typer.Exit(1)

    for step in steps:
        caches = ",".join(b.key for b in step.caches) or "-"
        typer.echo(f"{step.step_id}\t{step.version or '-'}\t{caches}")


@app.command("build")
def build(
    spec: str = typer.Argument(..., help="Spec document (.toml/.json) or built-in flavor name"),
    layer_dir: Optional[Path] = typer.Option(
        None, "--layer-dir", help="Keep the populated image layer under this directory"
    ),
    dockerfile: Optional[Path] = typer.Option(
        None, "--dockerfile", help="Write the Dockerfile of the finished image here"
    ),
) -> None:
    """Build a sandbox image and print the result as JSON."""
    try:
        image_spec = _load_spec(spec)
    except ProvisionerError as e:
        typer.echo(json.dumps(e.to_dict(), indent=2), err=True)
        raise typer.Exit(1)

    orchestrator = BuildOrchestrator()
    result = asyncio.run(orchestrator.build(image_spec, layer_root=layer_dir))

    output = result.to_dict()
    if result.image is not None:
        output["image_config"] = image_config(result.image)
    typer.echo(json.dumps(output, indent=2))

    if not result.succeeded:
        raise typer.Exit(1)

    if dockerfile is not None:
        dockerfile.write_text(render_dockerfile(result.image))
        typer.echo(f"Dockerfile written to: {dockerfile}", err=True)


if __name__ == "__main__":
    app()
