from abc import ABC, abstractmethod
from enum import Enum

from vm_pipeline.clients.vm_config import ConfigPatch
from vm_pipeline.models import PowerState, VirtualMachine, VMCreateSpec


class Capability(str, Enum):
    CREATE = "create"
    EDIT_CONFIG = "edit_config"
    RESTART = "restart"


class ControlPlaneClient(ABC):
    name: str = "abstract"
    capabilities: frozenset[Capability] = frozenset()

    def supports(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def missing_capabilities(self, *capabilities: Capability) -> list[str]:
        return [
            f"control plane backend {self.name!r} cannot {capability.value}"
            for capability in capabilities
            if not self.supports(capability)
        ]

    @abstractmethod
    def check_prerequisites(self) -> list[str]: ...

    @abstractmethod
    def list_vms(self) -> list[VirtualMachine]: ...

    @abstractmethod
    def status(self, name: str) -> PowerState: ...

    @abstractmethod
    def exists(self, name: str) -> bool: ...

    @abstractmethod
    def create(self, spec: VMCreateSpec) -> VirtualMachine: ...

    @abstractmethod
    def clone(self, source: str, new_name: str) -> VirtualMachine: ...

    @abstractmethod
    def start(self, name: str) -> None: ...

    @abstractmethod
    def stop(self, name: str) -> None: ...

    @abstractmethod
    def delete(self, name: str) -> None: ...

    @abstractmethod
    def get_ip(self, name: str) -> str | None: ...

    @abstractmethod
    def edit_config(self, name: str, patch: ConfigPatch) -> list[str]: ...

    @abstractmethod
    def restart(self) -> None: ...

    def mac_address(self, name: str) -> str | None:
        return None
