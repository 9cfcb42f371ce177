import atexit
import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from vm_pipeline.clients.console import Console, SerialConsole
from vm_pipeline.clients.control_plane import ControlPlaneClient
from vm_pipeline.clients.ssh import SSHTransport, ssh_tool_problems
from vm_pipeline.config import PipelineSettings
from vm_pipeline.errors import StageFailure
from vm_pipeline.models import (
    OutcomeStatus,
    PipelineOutcome,
    ResultRecord,
    Stage,
    Workflow,
)
from vm_pipeline.services.answer_file import AnswerFileServer
from vm_pipeline.services.bootstrap import Transport
from vm_pipeline.state_machine import can_transition


logger = logging.getLogger(__name__)


class OutOfOrderStage(RuntimeError):
    pass


def open_serial_console(host: str, port: int) -> Console:
    return SerialConsole(host, port).open()


@dataclass
class PipelineContext:
    settings: PipelineSettings
    control_plane: ControlPlaneClient
    open_console: Callable[[str, int], Console] = open_serial_console
    answer_server_factory: Callable[..., AnswerFileServer] = AnswerFileServer
    transport_factory: Callable[..., Transport] = SSHTransport
    arp_lookup: Callable[[str], str | None] | None = None
    sleep: Callable[[float], None] = time.sleep
    console_prerequisites: Callable[[], list[str]] = SerialConsole.check_prerequisites
    ssh_prerequisites: Callable[[bool], list[str]] = ssh_tool_problems

    def key_transport(self, host: str, key_name: str) -> Transport:
        return self.transport_factory(
            host,
            user=self.settings.ssh_user,
            key_path=str(self.settings.ssh_private_key_path(key_name)),
            connect_timeout=self.settings.ssh_connect_timeout_sec,
        )

    def password_transport(self, host: str, password: str) -> Transport:
        return self.transport_factory(
            host,
            user=self.settings.ssh_user,
            password=password,
            connect_timeout=self.settings.ssh_connect_timeout_sec,
        )


@dataclass
class StageTracker:
    workflow: Workflow
    vm_name: str | None = None
    completed: list[Stage] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    position: int = -1

    @contextmanager
    def stage(self, stage: Stage) -> Iterator[None]:
        ok, index = can_transition(self.workflow, self.position, stage)
        if not ok:
            last = self.completed[-1].value if self.completed else "start"
            raise StageFailure(
                workflow=self.workflow.value,
                stage=stage.value,
                vm_name=self.vm_name,
                cause=OutOfOrderStage(f"{stage.value} cannot follow {last}"),
            )
        logger.info(
            "stage started workflow=%s stage=%s vm=%s",
            self.workflow.value,
            stage.value,
            self.vm_name,
        )
        try:
            yield
        except StageFailure:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "stage failed workflow=%s stage=%s vm=%s error=%s",
                self.workflow.value,
                stage.value,
                self.vm_name,
                exc,
            )
            raise StageFailure(
                workflow=self.workflow.value,
                stage=stage.value,
                vm_name=self.vm_name,
                cause=exc,
            ) from exc
        self.position = index
        self.completed.append(stage)
        logger.info(
            "stage complete workflow=%s stage=%s vm=%s",
            self.workflow.value,
            stage.value,
            self.vm_name,
        )

    def warn(self, message: str) -> None:
        logger.warning("%s workflow=%s vm=%s", message, self.workflow.value, self.vm_name)
        self.warnings.append(message)

    def succeeded(
        self, *, ip_address: str | None = None, result: ResultRecord | None = None
    ) -> PipelineOutcome:
        return PipelineOutcome(
            workflow=self.workflow,
            status=OutcomeStatus.SUCCEEDED,
            vm_name=self.vm_name,
            ip_address=ip_address,
            result=result,
            stages=list(self.completed),
            warnings=list(self.warnings),
        )

    def failed(
        self, failure: StageFailure, *, ip_address: str | None = None
    ) -> PipelineOutcome:
        return PipelineOutcome(
            workflow=self.workflow,
            status=OutcomeStatus.FAILED,
            vm_name=self.vm_name,
            stage=Stage(failure.stage),
            cause=failure.cause,
            ip_address=ip_address,
            stages=list(self.completed),
            warnings=list(self.warnings),
        )


class Cleanup:
    def __init__(self) -> None:
        self._hooks: list[tuple[str, Callable[[], None]]] = []
        self._lock = threading.Lock()
        self._done = False
        self._previous_handlers: dict[int, object] = {}
        self._installed = False

    def add(self, description: str, hook: Callable[[], None]) -> None:
        with self._lock:
            self._hooks.append((description, hook))

    @property
    def done(self) -> bool:
        return self._done

    def run(self) -> None:
        # Popped one at a time; an interrupted run resumes on the next call.
        while True:
            with self._lock:
                self._done = True
                if not self._hooks:
                    return
                description, hook = self._hooks.pop()
            try:
                hook()
            except Exception as exc:  # noqa: BLE001
                logger.warning("cleanup step failed step=%s error=%s", description, exc)
            else:
                logger.debug("cleanup step done step=%s", description)

    def _on_signal(self, signum: int, frame: object) -> None:
        logger.warning("received signal=%s, cleaning up", signal.Signals(signum).name)
        raise SystemExit(128 + signum)

    def install(self) -> None:
        if self._installed:
            return
        atexit.register(self.run)
        if threading.current_thread() is threading.main_thread():
            for signum in (signal.SIGTERM, signal.SIGINT):
                self._previous_handlers[signum] = signal.signal(signum, self._on_signal)
        self._installed = True

    def uninstall(self) -> None:
        if not self._installed:
            return
        atexit.unregister(self.run)
        for signum, handler in self._previous_handlers.items():
            if handler is not None:
                signal.signal(signum, handler)
        self._previous_handlers.clear()
        self._installed = False

    def __enter__(self) -> "Cleanup":
        self.install()
        return self

    def __exit__(self, *exc_info: object) -> None:
        try:
            self.run()
        finally:
            self.uninstall()


def manual_delete_hint(vm_name: str) -> str:
    return f"vm-pipeline destroy {vm_name}"
