import logging
from datetime import datetime

from vm_pipeline.clients.control_plane import Capability
from vm_pipeline.clients.vm_config import ConfigPatch, random_mac
from vm_pipeline.errors import (
    AlreadyExists,
    NotFound,
    PrerequisiteMissing,
    ProbeTimeout,
    StageFailure,
)
from vm_pipeline.models import (
    PipelineOutcome,
    PowerState,
    ProvisioningSession,
    ResultRecord,
    SSHCredential,
    Stage,
    Workflow,
)
from vm_pipeline.schemas import CloneRequest
from vm_pipeline.services.bootstrap import RemoteBootstrapExecutor
from vm_pipeline.services.network import await_ip
from vm_pipeline.services.pipeline import (
    PipelineContext,
    StageTracker,
    manual_delete_hint,
)
from vm_pipeline.services.provisioning import bootstrap_and_test
from vm_pipeline.services.results import allocate_result_dir, persist_result


logger = logging.getLogger(__name__)


def default_clone_name(template: str, now: datetime | None = None) -> str:
    return f"{template}-{(now or datetime.now()).strftime('%Y%m%d-%H%M%S')}"


def _check_prerequisites(request: CloneRequest, ctx: PipelineContext) -> None:
    client = ctx.control_plane
    problems = list(client.check_prerequisites())
    problems.extend(
        client.missing_capabilities(Capability.EDIT_CONFIG, Capability.RESTART)
    )
    if request.repo_url:
        problems.extend(ctx.ssh_prerequisites(False))
        key = ctx.settings.ssh_private_key_path(request.ssh_key_name)
        if not key.is_file():
            problems.append(f"ssh private key not found: {key}")
    if problems:
        raise PrerequisiteMissing(problems)


def clone_vm(request: CloneRequest, ctx: PipelineContext) -> PipelineOutcome:
    settings = ctx.settings
    client = ctx.control_plane
    name = request.name or default_clone_name(request.template)
    tracker = StageTracker(Workflow.CLONE, name)
    cloned = False
    ip_address: str | None = None
    result: ResultRecord | None = None

    try:
        with tracker.stage(Stage.CHECK_TEMPLATE_EXISTS):
            _check_prerequisites(request, ctx)
            if not client.exists(request.template):
                raise NotFound(request.template)

        with tracker.stage(Stage.CHECK_TARGET_NAME_FREE):
            if client.exists(name):
                if not request.force:
                    raise AlreadyExists(name)
                logger.warning("replacing existing vm vm=%s", name)
                if client.status(name) == PowerState.RUNNING:
                    client.stop(name)
                client.delete(name)

        with tracker.stage(Stage.STOP_TEMPLATE_IF_RUNNING):
            if client.status(request.template) == PowerState.RUNNING:
                logger.info("stopping running template vm=%s", request.template)
                client.stop(request.template)

        with tracker.stage(Stage.CLONE):
            client.clone(request.template, name)
            cloned = True

        with tracker.stage(Stage.RANDOMIZE_MAC):
            mac = random_mac()
            client.edit_config(name, ConfigPatch(mac_address=mac))

        with tracker.stage(Stage.APPLY_RESOURCE_OVERRIDES):
            overrides = ConfigPatch(
                memory_mb=request.memory_mb, cpu_count=request.cpu_count
            )
            if not overrides.is_empty():
                client.edit_config(name, overrides)

        with tracker.stage(Stage.RESTART_CONTROL_PLANE):
            client.restart()
            if not client.exists(name):
                raise NotFound(name)

        with tracker.stage(Stage.START_VM):
            client.start(name)
            ctx.sleep(settings.clone_boot_wait_sec)

        with tracker.stage(Stage.AWAIT_IP):
            try:
                ip_address = await_ip(
                    client,
                    name,
                    max_attempts=settings.ip_poll_attempts,
                    interval=settings.ip_poll_interval_sec,
                    mac=mac,
                    arp_lookup=ctx.arp_lookup,
                    sleep=ctx.sleep,
                )
            except ProbeTimeout:
                if request.repo_url:
                    raise
                tracker.warn(
                    "ip address not detected; open the vm console and run 'ip addr'"
                )

        if request.repo_url and ip_address:
            executor = RemoteBootstrapExecutor(
                ctx.key_transport(ip_address, request.ssh_key_name),
                work_dir=settings.work_dir,
                preflight_timeout=settings.ssh_preflight_timeout_sec,
            )
            session = ProvisioningSession(
                vm_name=name,
                vm_ip=ip_address,
                credential=SSHCredential(
                    name=request.ssh_key_name,
                    private_key_path=str(
                        settings.ssh_private_key_path(request.ssh_key_name)
                    ),
                    public_key_path=str(
                        settings.ssh_public_key_path(request.ssh_key_name)
                    ),
                ),
                test_command=request.test_command or settings.test_command,
                work_dir=settings.work_dir,
                repo_url=request.repo_url,
            )

            with tracker.stage(Stage.VERIFY_SSH):
                executor.preflight()

            with tracker.stage(Stage.BOOTSTRAP_AND_TEST):
                result_dir = allocate_result_dir(settings.results_dir)
                executor.update_system()
                executor.install_essentials()
                exit_code, output = bootstrap_and_test(executor, session, result_dir)

            with tracker.stage(Stage.REPORT_AND_PERSIST_RESULT):
                result = persist_result(
                    result_dir,
                    vm_name=name,
                    vm_ip=ip_address,
                    repo_url=request.repo_url,
                    command=session.test_command,
                    exit_code=exit_code,
                    output=output,
                )

        if request.destroy_after:
            with tracker.stage(Stage.DESTROY_VM):
                if client.status(name) == PowerState.RUNNING:
                    client.stop(name)
                client.delete(name)
    except StageFailure as exc:
        if cloned:
            logger.error(
                "clone left in place vm=%s stage=%s; delete it with: %s",
                name,
                exc.stage,
                manual_delete_hint(name),
            )
        return tracker.failed(exc, ip_address=ip_address)

    return tracker.succeeded(ip_address=ip_address, result=result)
