import logging
import os
import time
from collections.abc import Callable
from pathlib import Path

from vm_pipeline.clients.commands import (
    CommandResult,
    missing_tools,
    run_command,
    which,
)
from vm_pipeline.clients.control_plane import Capability, ControlPlaneClient
from vm_pipeline.clients.vm_config import ConfigPatch, PlistConfigStore
from vm_pipeline.config import PipelineSettings
from vm_pipeline.errors import (
    AlreadyExists,
    ControlPlaneError,
    NotFound,
    PrerequisiteMissing,
)
from vm_pipeline.models import PowerState, VirtualMachine, VMCreateSpec


logger = logging.getLogger(__name__)

Runner = Callable[..., CommandResult]

_STATUS_MAP = {
    "started": PowerState.RUNNING,
    "starting": PowerState.RUNNING,
    "resuming": PowerState.RUNNING,
    "stopped": PowerState.STOPPED,
    "stopping": PowerState.STOPPED,
}


def parse_power_state(text: str) -> PowerState:
    word = text.strip().split()[0].lower() if text.strip() else ""
    return _STATUS_MAP.get(word, PowerState.UNKNOWN)


def parse_vm_list(text: str) -> list[VirtualMachine]:
    vms: list[VirtualMachine] = []
    for line in text.splitlines():
        parts = line.split(None, 2)
        if len(parts) < 3 or parts[0].upper() == "UUID":
            continue
        vms.append(
            VirtualMachine(
                name=parts[2].strip(), power_state=parse_power_state(parts[1])
            )
        )
    return vms


def _applescript_string(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def build_create_script(spec: VMCreateSpec, architecture: str, display: str) -> str:
    return (
        'tell application "UTM"\n'
        f"    set iso to POSIX file {_applescript_string(spec.iso_path)}\n"
        "    set vm to make new virtual machine with properties "
        "{backend:qemu, configuration:{"
        f"name:{_applescript_string(spec.name)}, "
        f"architecture:{_applescript_string(architecture)}, "
        f"memory:{spec.memory_mb}, "
        f"cpu cores:{spec.cpu_count}, "
        "drives:{{removable:true, source:iso}, "
        f"{{guest size:{spec.disk_gb * 1024}}}}}, "
        f"network interfaces:{{{{mode:{spec.network_mode}}}}}, "
        f"displays:{{{{hardware:{_applescript_string(display)}}}}}"
        "}}\n"
        "    return name of vm\n"
        "end tell\n"
    )


class UTMCliControlPlane(ControlPlaneClient):
    name = "utm-cli"
    capabilities = frozenset({Capability.EDIT_CONFIG, Capability.RESTART})

    def __init__(
        self,
        settings: PipelineSettings,
        run: Runner = run_command,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.utmctl = self._resolve_utmctl(settings)
        self.configs = PlistConfigStore(settings.utm_documents_dir)
        self._run = run
        self._sleep = sleep

    @staticmethod
    def _resolve_utmctl(settings: PipelineSettings) -> str:
        bundled = Path(settings.utm_app_path) / "Contents" / "MacOS" / "utmctl"
        if settings.utmctl_binary == "utmctl" and bundled.exists():
            if which("utmctl") is None:
                return str(bundled)
        return settings.utmctl_binary

    def _utmctl(self, *args: str) -> CommandResult:
        return self._run([self.utmctl, *args])

    def _checked(self, *args: str) -> CommandResult:
        result = self._utmctl(*args)
        if not result.ok:
            raise ControlPlaneError(result.argv, result.exit_code, result.output)
        return result

    def check_prerequisites(self) -> list[str]:
        problems: list[str] = []
        if not Path(self.settings.utm_app_path).is_dir():
            problems.append(
                f"UTM not found at {self.settings.utm_app_path}"
                " (install from https://mac.getutm.app/)"
            )
        if os.sep not in self.utmctl:
            problems.extend(missing_tools({self.utmctl: "ships inside UTM.app"}))
        elif not Path(self.utmctl).exists():
            problems.append(f"utmctl not found at {self.utmctl}")
        return problems

    def list_vms(self) -> list[VirtualMachine]:
        return parse_vm_list(self._checked("list").output)

    def status(self, name: str) -> PowerState:
        result = self._utmctl("status", name)
        if not result.ok:
            raise NotFound(name)
        return parse_power_state(result.output)

    def exists(self, name: str) -> bool:
        return self._utmctl("status", name).ok

    def create(self, spec: VMCreateSpec) -> VirtualMachine:
        raise PrerequisiteMissing(self.missing_capabilities(Capability.CREATE))

    def clone(self, source: str, new_name: str) -> VirtualMachine:
        if not self.exists(source):
            raise NotFound(source)
        if self.exists(new_name):
            raise AlreadyExists(new_name)
        started = time.monotonic()
        self._checked("clone", source, "--name", new_name)
        logger.info(
            "vm cloned source=%s vm=%s elapsed_sec=%.1f",
            source,
            new_name,
            time.monotonic() - started,
        )
        return VirtualMachine(name=new_name, power_state=PowerState.STOPPED)

    def start(self, name: str) -> None:
        if not self.exists(name):
            raise NotFound(name)
        self._checked("start", name)

    def stop(self, name: str) -> None:
        if self.status(name) == PowerState.STOPPED:
            return
        self._checked("stop", name)
        self._sleep(self.settings.stop_wait_sec)

    def delete(self, name: str) -> None:
        if not self.exists(name):
            raise NotFound(name)
        self._checked("delete", name)

    def get_ip(self, name: str) -> str | None:
        result = self._utmctl("ip-address", name)
        if not result.ok:
            return None
        lines = [line.strip() for line in result.output.splitlines() if line.strip()]
        return lines[0] if lines else None

    def edit_config(self, name: str, patch: ConfigPatch) -> list[str]:
        return self.configs.edit(name, patch)

    def mac_address(self, name: str) -> str | None:
        try:
            document = self.configs.load(name)
        except NotFound:
            return None
        networks = document.get("Network") or []
        if networks:
            return networks[0].get("MacAddress")
        return None

    def ensure_running(self) -> None:
        if not self._run(["pgrep", "-x", "UTM"]).ok:
            logger.info("starting UTM")
            self._run(["open", "-a", "UTM"])
            self._sleep(self.settings.restart_quit_wait_sec)

    def restart(self) -> None:
        logger.info("restarting UTM so edited configs are reloaded")
        quit_result = self._run(["osascript", "-e", 'quit app "UTM"'])
        if not quit_result.ok:
            self._run(["pkill", "-x", "UTM"])
        self._sleep(self.settings.restart_quit_wait_sec)
        launch = self._run(["open", "-a", "UTM"])
        if not launch.ok:
            raise ControlPlaneError(launch.argv, launch.exit_code, launch.output)
        self._sleep(self.settings.restart_launch_wait_sec)


class UTMScriptableControlPlane(UTMCliControlPlane):
    name = "utm"
    capabilities = frozenset(
        {Capability.CREATE, Capability.EDIT_CONFIG, Capability.RESTART}
    )

    def check_prerequisites(self) -> list[str]:
        problems = super().check_prerequisites()
        problems.extend(missing_tools({"osascript": "macOS scripting host"}))
        return problems

    def create(self, spec: VMCreateSpec) -> VirtualMachine:
        if self.exists(spec.name):
            raise AlreadyExists(spec.name)
        self.ensure_running()
        script = build_create_script(
            spec, self.settings.vm_architecture, self.settings.display_hardware
        )
        logger.info(
            "creating vm via applescript vm=%s memory_mb=%s cpu=%s disk_gb=%s",
            spec.name,
            spec.memory_mb,
            spec.cpu_count,
            spec.disk_gb,
        )
        result = self._run(["osascript", "-"], input_text=script)
        if not result.ok:
            raise ControlPlaneError(result.argv, result.exit_code, result.output)
        return VirtualMachine(name=spec.name, power_state=PowerState.STOPPED)
