import logging
from pathlib import Path

from vm_pipeline.clients.control_plane import Capability
from vm_pipeline.clients.vm_config import ConfigPatch
from vm_pipeline.errors import (
    AlreadyExists,
    PrerequisiteMissing,
    ProbeTimeout,
    StageFailure,
)
from vm_pipeline.models import (
    PipelineOutcome,
    PowerState,
    Stage,
    VMCreateSpec,
    Workflow,
)
from vm_pipeline.retry import RetryPolicy
from vm_pipeline.schemas import TemplateRequest
from vm_pipeline.services.answer_file import (
    detect_host_ip,
    remove_answer_file,
    write_answer_file,
)
from vm_pipeline.services.bootstrap import RemoteBootstrapExecutor
from vm_pipeline.services.install_driver import InstallDriver, alpine_transcript
from vm_pipeline.services.network import await_ip
from vm_pipeline.services.pipeline import (
    Cleanup,
    PipelineContext,
    StageTracker,
    manual_delete_hint,
)


logger = logging.getLogger(__name__)


def _validate(request: TemplateRequest, ctx: PipelineContext) -> tuple[str, str]:
    settings = ctx.settings
    client = ctx.control_plane
    problems = list(client.check_prerequisites())
    problems.extend(
        client.missing_capabilities(
            Capability.CREATE, Capability.EDIT_CONFIG, Capability.RESTART
        )
    )
    problems.extend(ctx.console_prerequisites())
    problems.extend(ctx.ssh_prerequisites(True))
    if not request.iso_path:
        problems.append("installer ISO path is required (--iso)")
    elif not Path(request.iso_path).expanduser().is_file():
        problems.append(f"installer ISO not found: {request.iso_path}")
    public_key_path = settings.ssh_public_key_path(request.ssh_key_name)
    if not public_key_path.is_file():
        problems.append(
            f"ssh public key not found: {public_key_path}"
            f" (ssh-keygen -t ed25519 -f {public_key_path.with_suffix('')})"
        )
    host_ip = settings.host_ip or detect_host_ip()
    if not host_ip:
        problems.append("could not determine the host address the guest can reach")
    if problems:
        raise PrerequisiteMissing(problems)
    if client.exists(request.name):
        if not request.force:
            raise AlreadyExists(request.name)
        logger.warning("replacing existing vm vm=%s", request.name)
        if client.status(request.name) == PowerState.RUNNING:
            client.stop(request.name)
        client.delete(request.name)
    return public_key_path.read_text(encoding="utf-8").strip(), host_ip or ""


def create_template(request: TemplateRequest, ctx: PipelineContext) -> PipelineOutcome:
    settings = ctx.settings
    client = ctx.control_plane
    tracker = StageTracker(Workflow.TEMPLATE, request.name)
    created = False
    ip_address: str | None = None

    with Cleanup() as cleanup:
        try:
            with tracker.stage(Stage.VALIDATE):
                public_key, host_ip = _validate(request, ctx)

            with tracker.stage(Stage.PREPARE_ANSWER_FILE):
                answer_path = write_answer_file(
                    settings.answer_file_path, public_key, settings.answer_template_path
                )
                cleanup.add("remove answer file", lambda: remove_answer_file(answer_path))

            with tracker.stage(Stage.START_FILE_SERVER):
                server = ctx.answer_server_factory(
                    answer_path,
                    port=settings.http_port,
                    host_ip=host_ip,
                    ready_retry=RetryPolicy(
                        settings.http_ready_attempts,
                        settings.http_ready_sleep_sec,
                        ctx.sleep,
                    ),
                )
                cleanup.add("stop answer file server", server.stop)
                answer_url = server.start()

            with tracker.stage(Stage.CREATE_VM):
                client.create(
                    VMCreateSpec(
                        name=request.name,
                        iso_path=str(Path(request.iso_path or "").expanduser()),
                        memory_mb=request.memory_mb,
                        cpu_count=request.cpu_count,
                        disk_gb=request.disk_gb,
                        network_mode=request.network_mode,
                    )
                )
                created = True

            with tracker.stage(Stage.CONFIGURE_SERIAL_CONSOLE):
                client.edit_config(
                    request.name, ConfigPatch(serial_tcp_port=settings.serial_port)
                )

            with tracker.stage(Stage.RESTART_CONTROL_PLANE):
                client.restart()

            with tracker.stage(Stage.START_VM):
                client.start(request.name)
                ctx.sleep(settings.iso_boot_wait_sec)

            with tracker.stage(Stage.RUN_INSTALL_DRIVER):
                driver = InstallDriver(
                    alpine_transcript(
                        answer_url=answer_url,
                        root_password=request.root_password,
                        prompt_timeout=settings.install_prompt_timeout_sec,
                        install_timeout=settings.install_complete_timeout_sec,
                    )
                )
                console = ctx.open_console(settings.serial_host, settings.serial_port)
                try:
                    driver.run(console)
                finally:
                    console.close()
                server.stop()
                ctx.sleep(settings.post_install_wait_sec)

            with tracker.stage(Stage.STOP_VM):
                client.stop(request.name)

            with tracker.stage(Stage.DETACH_INSTALL_MEDIA):
                client.edit_config(request.name, ConfigPatch(detach_install_media=True))

            with tracker.stage(Stage.RESTART_CONTROL_PLANE):
                client.restart()

            with tracker.stage(Stage.START_VM):
                client.start(request.name)
                ctx.sleep(settings.disk_boot_wait_sec)

            with tracker.stage(Stage.AWAIT_IP):
                try:
                    ip_address = await_ip(
                        client,
                        request.name,
                        max_attempts=settings.ip_poll_attempts,
                        interval=settings.ip_poll_interval_sec,
                        mac=client.mac_address(request.name),
                        arp_lookup=ctx.arp_lookup,
                        sleep=ctx.sleep,
                    )
                except ProbeTimeout:
                    tracker.warn(
                        "ip address not detected; find it in the vm console with 'ip addr'"
                    )

            with tracker.stage(Stage.INJECT_SSH_KEY):
                if ip_address is None:
                    tracker.warn("ssh key not installed: no ip address")
                else:
                    executor = RemoteBootstrapExecutor(
                        ctx.password_transport(ip_address, request.root_password),
                        preflight_timeout=settings.ssh_preflight_timeout_sec,
                    )
                    injected = executor.inject_key(
                        public_key,
                        RetryPolicy(
                            settings.key_inject_attempts,
                            settings.key_inject_backoff_sec,
                            ctx.sleep,
                        ),
                    )
                    if not injected:
                        tracker.warn(
                            "ssh key not installed; template has password-only access"
                        )

            with tracker.stage(Stage.STOP_VM):
                client.stop(request.name)

            with tracker.stage(Stage.DONE):
                logger.info("template ready vm=%s ip=%s", request.name, ip_address)
        except StageFailure as exc:
            if created:
                logger.error(
                    "template vm left in place vm=%s stage=%s; delete it with: %s",
                    request.name,
                    exc.stage,
                    manual_delete_hint(request.name),
                )
            return tracker.failed(exc, ip_address=ip_address)

    return tracker.succeeded(ip_address=ip_address)
