import copy
import logging
from threading import Lock

from vm_pipeline.clients.control_plane import Capability, ControlPlaneClient
from vm_pipeline.clients.vm_config import ConfigPatch
from vm_pipeline.errors import AlreadyExists, ControlPlaneError, NotFound
from vm_pipeline.models import PowerState, VirtualMachine, VMCreateSpec


logger = logging.getLogger(__name__)


class FakeControlPlane(ControlPlaneClient):
    name = "fake"
    capabilities = frozenset(
        {Capability.CREATE, Capability.EDIT_CONFIG, Capability.RESTART}
    )

    def __init__(self, ip_prefix: str = "192.168.64."):
        self._lock = Lock()
        self._loaded: dict[str, VirtualMachine] = {}
        self._persisted: dict[str, VirtualMachine] = {}
        self._stale: set[str] = set()
        self._next_host = 10
        self.ip_prefix = ip_prefix
        self.ip_responses: dict[str, list[str | None]] = {}
        self.calls: list[tuple[str, ...]] = []

    def _record(self, *call: str) -> None:
        self.calls.append(call)

    def _get(self, name: str) -> VirtualMachine:
        vm = self._loaded.get(name)
        if vm is None:
            raise NotFound(name)
        return vm

    def _register(self, vm: VirtualMachine) -> VirtualMachine:
        self._loaded[vm.name] = vm
        self._persisted[vm.name] = copy.deepcopy(vm)
        return vm

    def add_vm(self, vm: VirtualMachine) -> VirtualMachine:
        with self._lock:
            return self._register(vm)

    def vm(self, name: str) -> VirtualMachine:
        with self._lock:
            return copy.deepcopy(self._get(name))

    def call_names(self) -> list[str]:
        return [call[0] for call in self.calls]

    def check_prerequisites(self) -> list[str]:
        return []

    def list_vms(self) -> list[VirtualMachine]:
        with self._lock:
            return [copy.deepcopy(vm) for vm in self._loaded.values()]

    def status(self, name: str) -> PowerState:
        with self._lock:
            return self._get(name).power_state

    def exists(self, name: str) -> bool:
        with self._lock:
            return name in self._loaded

    def create(self, spec: VMCreateSpec) -> VirtualMachine:
        with self._lock:
            self._record("create", spec.name)
            if spec.name in self._loaded:
                raise AlreadyExists(spec.name)
            vm = VirtualMachine(name=spec.name, power_state=PowerState.STOPPED)
            vm.resources.memory_mb = spec.memory_mb
            vm.resources.cpu_count = spec.cpu_count
            vm.resources.disk_gb = spec.disk_gb
            vm.network.mode = spec.network_mode
            vm.install_media_attached = True
            return copy.deepcopy(self._register(vm))

    def clone(self, source: str, new_name: str) -> VirtualMachine:
        with self._lock:
            self._record("clone", source, new_name)
            src = self._get(source)
            if new_name in self._loaded:
                raise AlreadyExists(new_name)
            if src.power_state != PowerState.STOPPED:
                raise ControlPlaneError(
                    ["clone", source], 1, f"source {source} is not stopped"
                )
            vm = copy.deepcopy(src)
            vm.name = new_name
            vm.network.ip_address = None
            return copy.deepcopy(self._register(vm))

    def start(self, name: str) -> None:
        with self._lock:
            self._record("start", name)
            vm = self._get(name)
            if name in self._stale:
                raise ControlPlaneError(
                    ["start", name], 1, "config edited without control plane restart"
                )
            vm.power_state = PowerState.RUNNING
            if vm.network.ip_address is None:
                vm.network.ip_address = f"{self.ip_prefix}{self._next_host}"
                self._next_host += 1

    def stop(self, name: str) -> None:
        with self._lock:
            self._record("stop", name)
            self._get(name).power_state = PowerState.STOPPED

    def delete(self, name: str) -> None:
        with self._lock:
            self._record("delete", name)
            self._get(name)
            del self._loaded[name]
            self._persisted.pop(name, None)
            self._stale.discard(name)

    def get_ip(self, name: str) -> str | None:
        with self._lock:
            self._record("get_ip", name)
            vm = self._get(name)
            scripted = self.ip_responses.get(name)
            if scripted:
                return scripted.pop(0)
            if vm.power_state != PowerState.RUNNING:
                return None
            return vm.network.ip_address

    def edit_config(self, name: str, patch: ConfigPatch) -> list[str]:
        with self._lock:
            self._record("edit_config", name)
            self._get(name)
            vm = self._persisted[name]
            changes: list[str] = []
            if patch.serial_tcp_port is not None:
                vm.serial.enabled = True
                vm.serial.port = patch.serial_tcp_port
                changes.append(f"serial={patch.serial_tcp_port}")
            if patch.mac_address is not None:
                vm.network.mac_address = patch.mac_address.upper()
                changes.append(f"mac={vm.network.mac_address}")
            if patch.memory_mb is not None:
                vm.resources.memory_mb = patch.memory_mb
                changes.append(f"memory_mb={patch.memory_mb}")
            if patch.cpu_count is not None:
                vm.resources.cpu_count = patch.cpu_count
                changes.append(f"cpu_count={patch.cpu_count}")
            if patch.detach_install_media:
                vm.install_media_attached = False
                changes.append("detached_media")
            self._stale.add(name)
            return changes

    def restart(self) -> None:
        with self._lock:
            self._record("restart")
            # Quitting the hypervisor powers off every guest.
            for vm in self._loaded.values():
                vm.power_state = PowerState.STOPPED
            for name in self._stale:
                reloaded = copy.deepcopy(self._persisted[name])
                reloaded.power_state = PowerState.STOPPED
                reloaded.network.ip_address = self._loaded[name].network.ip_address
                self._loaded[name] = reloaded
            self._stale.clear()

    def mac_address(self, name: str) -> str | None:
        with self._lock:
            return self._get(name).network.mac_address
