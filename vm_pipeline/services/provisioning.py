import logging
from pathlib import Path

from vm_pipeline.errors import NotFound, PrerequisiteMissing, StageFailure
from vm_pipeline.models import (
    PipelineOutcome,
    PowerState,
    ProvisioningSession,
    ResultRecord,
    SSHCredential,
    Stage,
    Workflow,
)
from vm_pipeline.schemas import ProvisionRequest
from vm_pipeline.services.bootstrap import RemoteBootstrapExecutor
from vm_pipeline.services.pipeline import PipelineContext, StageTracker
from vm_pipeline.services.results import (
    OUTPUT_FILE,
    allocate_result_dir,
    persist_result,
)


logger = logging.getLogger(__name__)


def bootstrap_and_test(
    executor: RemoteBootstrapExecutor, session: ProvisioningSession, result_dir: Path
) -> tuple[int, str]:
    if not session.repo_url:
        raise ValueError("bootstrap_and_test needs a repository url")
    checkout = executor.clone_repository(session.repo_url)
    executor.install_toolchains(checkout, executor.detect_project_types(checkout))
    return executor.run_tests(
        checkout,
        session.test_command,
        result_dir / OUTPUT_FILE,
        repo_url=session.repo_url,
    )


def _session_for(request: ProvisionRequest, ctx: PipelineContext) -> ProvisioningSession:
    settings = ctx.settings
    return ProvisioningSession(
        vm_name=request.vm_name,
        vm_ip=request.vm_ip,
        credential=SSHCredential(
            name=request.ssh_key_name,
            private_key_path=str(settings.ssh_private_key_path(request.ssh_key_name)),
            public_key_path=str(settings.ssh_public_key_path(request.ssh_key_name)),
        ),
        test_command=request.test_command,
        work_dir=settings.work_dir,
        repo_url=request.repo_url,
    )


def provision_for_testing(
    request: ProvisionRequest, ctx: PipelineContext
) -> PipelineOutcome:
    settings = ctx.settings
    session = _session_for(request, ctx)
    tracker = StageTracker(Workflow.PROVISION, request.vm_name)
    result: ResultRecord | None = None

    try:
        with tracker.stage(Stage.PREFLIGHT):
            problems = list(ctx.ssh_prerequisites(False))
            if not Path(session.credential.private_key_path).is_file():
                problems.append(
                    f"ssh private key not found: {session.credential.private_key_path}"
                )
            if problems:
                raise PrerequisiteMissing(problems)
            executor = RemoteBootstrapExecutor(
                ctx.key_transport(request.vm_ip, request.ssh_key_name),
                work_dir=session.work_dir,
                preflight_timeout=settings.ssh_preflight_timeout_sec,
            )
            executor.preflight()

        with tracker.stage(Stage.UPDATE_SYSTEM):
            executor.update_system()

        with tracker.stage(Stage.INSTALL_ESSENTIALS):
            executor.install_essentials()

        if session.repo_url is None:
            logger.info("no repository given; system update only vm=%s", request.vm_name)
            return tracker.succeeded(ip_address=request.vm_ip)

        with tracker.stage(Stage.CLONE_REPOSITORY):
            checkout = executor.clone_repository(session.repo_url)

        with tracker.stage(Stage.INSTALL_TOOLCHAINS):
            executor.install_toolchains(checkout, executor.detect_project_types(checkout))

        with tracker.stage(Stage.RUN_TESTS):
            result_dir = allocate_result_dir(settings.results_dir)
            exit_code, output = executor.run_tests(
                checkout,
                session.test_command,
                result_dir / OUTPUT_FILE,
                repo_url=session.repo_url,
            )

        with tracker.stage(Stage.PERSIST_RESULT):
            result = persist_result(
                result_dir,
                vm_name=request.vm_name,
                vm_ip=request.vm_ip,
                repo_url=session.repo_url,
                command=session.test_command,
                exit_code=exit_code,
                output=output,
            )
    except StageFailure as exc:
        if exc.stage == Stage.PREFLIGHT.value:
            logger.error(
                "check the vm is running vm=%s ip=%s", request.vm_name, request.vm_ip
            )
        return tracker.failed(exc, ip_address=request.vm_ip)

    return tracker.succeeded(ip_address=request.vm_ip, result=result)


def destroy_vm(name: str, ctx: PipelineContext) -> PipelineOutcome:
    client = ctx.control_plane
    tracker = StageTracker(Workflow.DESTROY, name)
    try:
        with tracker.stage(Stage.CHECK_EXISTS):
            if not client.exists(name):
                raise NotFound(name)
            running = client.status(name) == PowerState.RUNNING

        if running:
            with tracker.stage(Stage.STOP_IF_RUNNING):
                client.stop(name)

        with tracker.stage(Stage.DELETE):
            client.delete(name)
    except StageFailure as exc:
        return tracker.failed(exc)

    logger.info("vm destroyed vm=%s", name)
    return tracker.succeeded()
