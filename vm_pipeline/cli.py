"""Command line entry point: ``vm-pipeline``."""

import logging
import sys
from collections.abc import Callable
from pathlib import Path

import typer
from pydantic import BaseModel, ValidationError

from vm_pipeline.config import PipelineSettings, get_settings
from vm_pipeline.errors import (
    AlreadyExists,
    InstallTranscriptMismatch,
    PipelineError,
    RemoteCommandFailure,
)
from vm_pipeline.factories import build_context
from vm_pipeline.logging_config import configure_logging
from vm_pipeline.models import PipelineOutcome, TestStatus
from vm_pipeline.schemas import CloneRequest, ProvisionRequest, TemplateRequest
from vm_pipeline.services.clone import clone_vm
from vm_pipeline.services.pipeline import PipelineContext
from vm_pipeline.services.provisioning import destroy_vm, provision_for_testing
from vm_pipeline.services.template import create_template


logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_FAILED = 2

app = typer.Typer(
    help="Build, clone, provision and destroy disposable test VMs.",
    no_args_is_help=True,
)


def exit_code_for(outcome: PipelineOutcome) -> int:
    if outcome.succeeded:
        if outcome.result is not None and outcome.result.status == TestStatus.FAILED:
            return EXIT_FAILED
        return EXIT_OK
    if isinstance(outcome.cause, (InstallTranscriptMismatch, RemoteCommandFailure)):
        return EXIT_FAILED
    return EXIT_INVALID


def _load_settings() -> PipelineSettings:
    try:
        return get_settings()
    except (ValueError, ValidationError) as e:
        typer.echo(f"Error: invalid configuration: {e}", err=True)
        raise typer.Exit(code=EXIT_INVALID)


def _build_request(model: type[BaseModel], **values: object) -> BaseModel:
    try:
        return model(**values)
    except ValidationError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=EXIT_INVALID)


def _report(outcome: PipelineOutcome) -> None:
    for warning in outcome.warnings:
        typer.echo(f"Warning: {warning}", err=True)
    if not outcome.succeeded:
        stage = outcome.stage.value if outcome.stage else "-"
        typer.echo(
            f"Error: {outcome.workflow.value} failed at stage {stage}"
            f" (vm: {outcome.vm_name}): {outcome.cause}",
            err=True,
        )
        return
    typer.echo(f"{outcome.workflow.value} succeeded: vm={outcome.vm_name}")
    if outcome.ip_address:
        typer.echo(f"IP address: {outcome.ip_address}")
    if outcome.result is not None:
        typer.echo(f"Test status: {outcome.result.status.value}")
        typer.echo(f"Exit code: {outcome.result.exit_code}")
        typer.echo(f"Results: {outcome.result.path}")


def _run_with_confirmation(
    run: Callable[[bool], PipelineOutcome], force: bool
) -> PipelineOutcome:
    outcome = run(force)
    if (
        not force
        and not outcome.succeeded
        and isinstance(outcome.cause, AlreadyExists)
        and sys.stdin.isatty()
    ):
        prompt = f"VM '{outcome.cause.vm_name}' already exists. Delete it and continue?"
        if typer.confirm(prompt):
            outcome = run(True)
    return outcome


def _finish(outcome: PipelineOutcome) -> None:
    _report(outcome)
    code = exit_code_for(outcome)
    if code != EXIT_OK:
        raise typer.Exit(code=code)


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    configure_logging(logging.DEBUG if verbose else logging.INFO)


@app.command("create-template")
def create_template_command(
    iso: Path | None = typer.Option(None, "--iso", help="Alpine installer ISO"),  # noqa: B008
    ram: int | None = typer.Option(None, "--ram", help="RAM in GB"),
    cpu: int | None = typer.Option(None, "--cpu", help="CPU cores"),
    disk: int | None = typer.Option(None, "--disk", help="Disk size in GB"),
    password: str | None = typer.Option(None, "--password", help="Root password"),
    ssh: str | None = typer.Option(None, "--ssh", help="SSH key name in the ssh dir"),
    network: str | None = typer.Option(None, "--network", help="Network mode"),
    name: str | None = typer.Option(None, "--name", help="Template VM name"),
    force: bool = typer.Option(False, "--force", help="Replace an existing VM"),
) -> None:
    """Create the golden template VM through an unattended install."""
    settings = _load_settings()
    ctx = build_context(settings)

    def run(force_run: bool) -> PipelineOutcome:
        request = _build_request(
            TemplateRequest,
            name=name or settings.template_name,
            iso_path=str(iso) if iso else None,
            ram_gb=ram or settings.ram_gb,
            cpu_count=cpu or settings.cpu_count,
            disk_gb=disk or settings.disk_gb,
            root_password=password or settings.root_password,
            ssh_key_name=ssh or settings.ssh_key_name,
            network_mode=network or settings.network_mode,
            force=force_run,
        )
        return create_template(request, ctx)

    _finish(_run_with_confirmation(run, force))


@app.command("clone")
def clone_command(
    name: str | None = typer.Argument(None, help="Name of the new VM"),
    template: str | None = typer.Option(None, "--template", help="Template to clone"),
    ram: int | None = typer.Option(None, "--ram", help="RAM in GB"),
    cpu: int | None = typer.Option(None, "--cpu", help="CPU cores"),
    ssh: str | None = typer.Option(None, "--ssh", help="SSH key name in the ssh dir"),
    repo: str | None = typer.Option(None, "--repo", help="Repository to test"),
    command: str | None = typer.Option(None, "--command", help="Test command"),
    destroy: bool = typer.Option(False, "--destroy", help="Delete the VM afterwards"),
    force: bool = typer.Option(False, "--force", help="Replace an existing VM"),
) -> None:
    """Clone the template into a new VM, optionally running a test suite."""
    settings = _load_settings()
    ctx = build_context(settings)

    def run(force_run: bool) -> PipelineOutcome:
        request = _build_request(
            CloneRequest,
            name=name,
            template=template or settings.template_name,
            ram_gb=ram,
            cpu_count=cpu,
            ssh_key_name=ssh or settings.ssh_key_name,
            repo_url=repo,
            test_command=command,
            destroy_after=destroy,
            force=force_run,
        )
        return clone_vm(request, ctx)

    outcome = _run_with_confirmation(run, force)
    if outcome.succeeded and outcome.ip_address and not destroy:
        key = settings.ssh_private_key_path(ssh)
        typer.echo(f"Connect: ssh -i {key} {settings.ssh_user}@{outcome.ip_address}")
    _finish(outcome)


@app.command("provision-for-testing")
def provision_command(
    name: str = typer.Option(..., "--name", help="VM name"),
    ip: str = typer.Option(..., "--ip", help="VM IP address"),
    ssh: str | None = typer.Option(None, "--ssh", help="SSH key name in the ssh dir"),
    repo: str | None = typer.Option(None, "--repo", help="Repository to test"),
    command: str | None = typer.Option(None, "--command", help="Test command"),
) -> None:
    """Install toolchains in a running VM and run a repository's tests."""
    settings = _load_settings()
    request = _build_request(
        ProvisionRequest,
        vm_name=name,
        vm_ip=ip,
        ssh_key_name=ssh or settings.ssh_key_name,
        repo_url=repo,
        test_command=command or settings.test_command,
    )
    _finish(provision_for_testing(request, build_context(settings)))


@app.command("destroy")
def destroy_command(name: str = typer.Argument(..., help="VM to delete")) -> None:
    """Stop and delete a VM."""
    settings = _load_settings()
    _finish(destroy_vm(name, build_context(settings)))


@app.command("list")
def list_command() -> None:
    """List registered VMs and their power state."""
    settings = _load_settings()
    ctx: PipelineContext = build_context(settings)
    try:
        vms = ctx.control_plane.list_vms()
    except PipelineError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(code=EXIT_INVALID)
    if not vms:
        typer.echo("No VMs registered")
        return
    for vm in vms:
        typer.echo(f"{vm.name}\t{vm.power_state.value}")


if __name__ == "__main__":  # pragma: no cover
    app()
