from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


def repo_dir_name(repo_url: str) -> str:
    name = repo_url.rstrip("/").rsplit("/", 1)[-1]
    return name[:-4] if name.endswith(".git") else name


class PowerState(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    UNKNOWN = "unknown"


class Workflow(str, Enum):
    TEMPLATE = "create-template"
    CLONE = "clone"
    PROVISION = "provision-for-testing"
    DESTROY = "destroy"


class Stage(str, Enum):
    VALIDATE = "Validate"
    PREPARE_ANSWER_FILE = "PrepareAnswerFile"
    START_FILE_SERVER = "StartFileServer"
    CREATE_VM = "CreateVM"
    CONFIGURE_SERIAL_CONSOLE = "ConfigureSerialConsole"
    RESTART_CONTROL_PLANE = "RestartControlPlane"
    START_VM = "StartVM"
    RUN_INSTALL_DRIVER = "RunInstallDriver"
    STOP_VM = "StopVM"
    DETACH_INSTALL_MEDIA = "DetachInstallMedia"
    AWAIT_IP = "AwaitIP"
    INJECT_SSH_KEY = "InjectSSHKey"
    DONE = "Done"

    CHECK_TEMPLATE_EXISTS = "CheckTemplateExists"
    CHECK_TARGET_NAME_FREE = "CheckTargetNameFree"
    STOP_TEMPLATE_IF_RUNNING = "StopTemplateIfRunning"
    CLONE = "Clone"
    RANDOMIZE_MAC = "RandomizeMAC"
    APPLY_RESOURCE_OVERRIDES = "ApplyResourceOverrides"
    VERIFY_SSH = "VerifySSH"
    BOOTSTRAP_AND_TEST = "BootstrapAndTest"
    REPORT_AND_PERSIST_RESULT = "ReportAndPersistResult"
    DESTROY_VM = "DestroyVM"

    PREFLIGHT = "Preflight"
    UPDATE_SYSTEM = "UpdateSystem"
    INSTALL_ESSENTIALS = "InstallEssentials"
    CLONE_REPOSITORY = "CloneRepository"
    INSTALL_TOOLCHAINS = "InstallToolchains"
    RUN_TESTS = "RunTests"
    PERSIST_RESULT = "PersistResult"

    CHECK_EXISTS = "CheckExists"
    STOP_IF_RUNNING = "StopIfRunning"
    DELETE = "Delete"


class OutcomeStatus(str, Enum):
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class TestStatus(str, Enum):
    __test__ = False

    PASSED = "PASSED"
    FAILED = "FAILED"


@dataclass
class ResourceProfile:
    memory_mb: int | None = None
    cpu_count: int | None = None
    disk_gb: int | None = None


@dataclass
class NetworkIdentity:
    mode: str = "bridged"
    mac_address: str | None = None
    ip_address: str | None = None


@dataclass
class SerialConsoleBinding:
    enabled: bool = False
    port: int | None = None


@dataclass
class VirtualMachine:
    name: str
    power_state: PowerState = PowerState.UNKNOWN
    resources: ResourceProfile = field(default_factory=ResourceProfile)
    network: NetworkIdentity = field(default_factory=NetworkIdentity)
    serial: SerialConsoleBinding = field(default_factory=SerialConsoleBinding)
    install_media_attached: bool = False


@dataclass
class VMCreateSpec:
    name: str
    iso_path: str
    memory_mb: int
    cpu_count: int
    disk_gb: int
    network_mode: str = "bridged"


@dataclass
class SSHCredential:
    name: str
    private_key_path: str
    public_key_path: str


@dataclass
class ProvisioningSession:
    vm_name: str
    vm_ip: str
    credential: SSHCredential
    test_command: str
    work_dir: str
    repo_url: str | None = None


@dataclass
class ResultRecord:
    path: str
    vm_name: str
    vm_ip: str
    repo_url: str | None
    command: str
    exit_code: int
    status: TestStatus
    timestamp: datetime


@dataclass
class PipelineOutcome:
    workflow: Workflow
    status: OutcomeStatus
    vm_name: str | None = None
    stage: Stage | None = None
    cause: BaseException | None = None
    ip_address: str | None = None
    result: ResultRecord | None = None
    stages: list[Stage] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCEEDED
