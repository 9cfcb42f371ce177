from pathlib import Path

import pytest

from vm_pipeline.cli import exit_code_for
from vm_pipeline.clients.commands import CommandResult
from vm_pipeline.clients.console import ConsoleTimeout
from vm_pipeline.clients.control_plane import Capability
from vm_pipeline.clients.fake import FakeControlPlane
from vm_pipeline.config import PipelineSettings
from vm_pipeline.errors import (
    AlreadyExists,
    ConnectivityFailure,
    InstallTranscriptMismatch,
    NotFound,
    PrerequisiteMissing,
    RemoteCommandFailure,
)
from vm_pipeline.models import (
    OutcomeStatus,
    PowerState,
    Stage,
    TestStatus,
    VirtualMachine,
)
from vm_pipeline.schemas import CloneRequest, ProvisionRequest, TemplateRequest
from vm_pipeline.services.clone import clone_vm
from vm_pipeline.services.pipeline import PipelineContext
from vm_pipeline.services.provisioning import destroy_vm, provision_for_testing
from vm_pipeline.services.template import create_template
from vm_pipeline.state_machine import PROVISION_STAGES, TEMPLATE_STAGES


KEY_NAME = "id_ed25519_alpine_vm"


class ScriptedTransport:
    def __init__(self, rules, host):
        self.host = host
        self.rules = rules
        self.commands = []

    def run(self, command, *, input_text=None, connect_timeout=None, timeout=None):
        self.commands.append((command, input_text))
        text = command if input_text is None else f"{command}\n{input_text}"
        for needle, (exit_code, output) in self.rules:
            if needle in text:
                return CommandResult(argv=["ssh"], exit_code=exit_code, output=output)
        return CommandResult(argv=["ssh"], exit_code=0, output="")

    def run_script(self, script, *, timeout=None):
        return self.run("sh -s", input_text=script, timeout=timeout)


class TransportFactory:
    def __init__(self, rules=None):
        self.rules = rules or []
        self.created = []

    def __call__(self, host, **kwargs):
        transport = ScriptedTransport(self.rules, host)
        self.created.append((transport, kwargs))
        return transport


class FakeAnswerServer:
    def __init__(self, answer_path, *, port, host_ip, ready_retry=None):
        self.answer_path = Path(answer_path)
        self.port = port
        self.host_ip = host_ip
        self.started = False
        self.stops = 0

    @property
    def url(self):
        return f"http://{self.host_ip}:{self.port}/{self.answer_path.name}"

    def start(self):
        self.started = True
        return self.url

    def stop(self):
        self.stops += 1


class AgreeableConsole:
    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.sent = []
        self.closed = False

    def expect(self, pattern, timeout):
        if self.fail_on and self.fail_on in pattern:
            raise ConsoleTimeout(pattern)
        return ""

    def send(self, text):
        self.sent.append(text)

    def tail(self):
        return "last screen"

    def close(self):
        self.closed = True


class NoCreateControlPlane(FakeControlPlane):
    name = "fake-cli"
    capabilities = frozenset({Capability.EDIT_CONFIG, Capability.RESTART})


@pytest.fixture
def settings(tmp_path):
    (tmp_path / KEY_NAME).write_text("PRIVATE KEY\n")
    (tmp_path / f"{KEY_NAME}.pub").write_text("ssh-ed25519 AAAATEST user@host\n")
    (tmp_path / "alpine.iso").write_bytes(b"iso")
    return PipelineSettings(
        backend="fake",
        ssh_dir=str(tmp_path),
        host_ip="10.0.0.2",
        answer_file_path=str(tmp_path / "alpine-answer.txt"),
        results_dir=str(tmp_path / "results"),
        ip_poll_attempts=3,
    )


def _context(settings, client=None, console=None, transports=None, servers=None):
    servers = servers if servers is not None else []

    def server_factory(*args, **kwargs):
        server = FakeAnswerServer(*args, **kwargs)
        servers.append(server)
        return server

    return PipelineContext(
        settings=settings,
        control_plane=client or FakeControlPlane(),
        open_console=lambda host, port: console or AgreeableConsole(),
        answer_server_factory=server_factory,
        transport_factory=transports or TransportFactory(),
        arp_lookup=lambda mac: None,
        sleep=lambda seconds: None,
        console_prerequisites=lambda: [],
        ssh_prerequisites=lambda password_auth: [],
    )


def _template_request(tmp_path, **overrides):
    values = {
        "name": "alpine-template",
        "iso_path": str(tmp_path / "alpine.iso"),
        "ram_gb": 2,
        "cpu_count": 2,
        "disk_gb": 20,
        "root_password": "s3cret",
        "ssh_key_name": KEY_NAME,
    }
    values.update(overrides)
    return TemplateRequest(**values)


def _stopped_template(client, name="alpine-template"):
    client.add_vm(VirtualMachine(name=name, power_state=PowerState.STOPPED))


def test_template_flow_ends_stopped_with_media_detached(settings, tmp_path):
    client = FakeControlPlane()
    servers = []
    transports = TransportFactory()
    console = AgreeableConsole()
    ctx = _context(settings, client, console, transports, servers)

    outcome = create_template(_template_request(tmp_path), ctx)

    assert outcome.status == OutcomeStatus.SUCCEEDED
    assert outcome.stages == TEMPLATE_STAGES
    assert outcome.ip_address == "192.168.64.10"
    vm = client.vm("alpine-template")
    assert vm.power_state == PowerState.STOPPED
    assert not vm.install_media_attached
    assert vm.serial.port == settings.serial_port
    assert client.call_names() == [
        "create",
        "edit_config",
        "restart",
        "start",
        "stop",
        "edit_config",
        "restart",
        "start",
        "get_ip",
        "stop",
    ]
    assert console.closed
    assert servers[0].started and servers[0].stops >= 1
    assert not Path(settings.answer_file_path).exists()
    transport, kwargs = transports.created[0]
    assert kwargs["password"] == "s3cret"
    assert transport.commands[0][1] == "ssh-ed25519 AAAATEST user@host\n"
    assert exit_code_for(outcome) == 0


def test_template_install_mismatch_keeps_vm_and_cleans_up(settings, tmp_path):
    client = FakeControlPlane()
    servers = []
    console = AgreeableConsole(fail_on="Installation is complete")
    ctx = _context(settings, client, console, servers=servers)

    outcome = create_template(_template_request(tmp_path), ctx)

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.stage == Stage.RUN_INSTALL_DRIVER
    assert isinstance(outcome.cause, InstallTranscriptMismatch)
    assert outcome.cause.tail == "last screen"
    assert client.exists("alpine-template")
    assert "delete" not in client.call_names()
    assert console.closed
    assert servers[0].stops >= 1
    assert not Path(settings.answer_file_path).exists()
    assert exit_code_for(outcome) == 2


def test_template_existing_name_fails_validation_without_force(settings, tmp_path):
    client = FakeControlPlane()
    _stopped_template(client)
    outcome = create_template(_template_request(tmp_path), _context(settings, client))
    assert outcome.stage == Stage.VALIDATE
    assert isinstance(outcome.cause, AlreadyExists)
    assert "create" not in client.call_names()
    assert exit_code_for(outcome) == 1


def test_template_force_replaces_existing_vm(settings, tmp_path):
    client = FakeControlPlane()
    client.add_vm(VirtualMachine(name="alpine-template", power_state=PowerState.RUNNING))
    outcome = create_template(
        _template_request(tmp_path, force=True), _context(settings, client)
    )
    assert outcome.succeeded
    assert client.call_names()[:3] == ["stop", "delete", "create"]


def test_template_requires_create_capability(settings, tmp_path):
    client = NoCreateControlPlane()
    outcome = create_template(_template_request(tmp_path), _context(settings, client))
    assert outcome.stage == Stage.VALIDATE
    assert isinstance(outcome.cause, PrerequisiteMissing)
    assert any("cannot create" in item for item in outcome.cause.missing)
    assert client.calls == []


def test_template_missing_iso_is_prerequisite_failure(settings, tmp_path):
    request = _template_request(tmp_path, iso_path=str(tmp_path / "missing.iso"))
    outcome = create_template(request, _context(settings))
    assert isinstance(outcome.cause, PrerequisiteMissing)
    assert not Path(settings.answer_file_path).exists()


def test_template_without_ip_still_finishes_with_warning(settings, tmp_path):
    client = FakeControlPlane()
    client.ip_responses["alpine-template"] = [None, None, None]
    transports = TransportFactory()
    outcome = create_template(
        _template_request(tmp_path), _context(settings, client, transports=transports)
    )
    assert outcome.succeeded
    assert outcome.ip_address is None
    assert transports.created == []
    assert any("ip address not detected" in warning for warning in outcome.warnings)
    assert client.vm("alpine-template").power_state == PowerState.STOPPED


def test_template_key_injection_exhaustion_is_a_warning(settings, tmp_path):
    transports = TransportFactory([("authorized_keys", (255, "denied"))])
    outcome = create_template(
        _template_request(tmp_path), _context(settings, transports=transports)
    )
    assert outcome.succeeded
    assert any("password-only" in warning for warning in outcome.warnings)
    transport, _ = transports.created[0]
    assert len(transport.commands) == settings.key_inject_attempts


def test_clone_existing_name_without_force_fails_before_clone(settings):
    client = FakeControlPlane()
    _stopped_template(client)
    client.add_vm(VirtualMachine(name="vm1", power_state=PowerState.STOPPED))
    request = CloneRequest(name="vm1", template="alpine-template", ssh_key_name=KEY_NAME)

    outcome = clone_vm(request, _context(settings, client))

    assert outcome.status == OutcomeStatus.FAILED
    assert outcome.stage == Stage.CHECK_TARGET_NAME_FREE
    assert isinstance(outcome.cause, AlreadyExists)
    assert "clone" not in client.call_names()
    assert exit_code_for(outcome) == 1


def test_clone_with_force_replaces_existing_vm(settings):
    client = FakeControlPlane()
    _stopped_template(client)
    client.add_vm(VirtualMachine(name="vm1", power_state=PowerState.STOPPED))
    request = CloneRequest(
        name="vm1", template="alpine-template", ssh_key_name=KEY_NAME, force=True
    )
    outcome = clone_vm(request, _context(settings, client))
    assert outcome.succeeded
    names = client.call_names()
    assert names.index("delete") < names.index("clone")


def test_clone_randomizes_mac_and_applies_overrides(settings):
    client = FakeControlPlane()
    client.add_vm(VirtualMachine(name="alpine-template", power_state=PowerState.RUNNING))
    request = CloneRequest(
        name="vm1", template="alpine-template", ssh_key_name=KEY_NAME, ram_gb=4, cpu_count=3
    )

    outcome = clone_vm(request, _context(settings, client))

    assert outcome.succeeded
    assert outcome.stages[-1] == Stage.AWAIT_IP
    assert outcome.ip_address is not None
    vm = client.vm("vm1")
    assert vm.network.mac_address.startswith("52:54:00:")
    assert vm.resources.memory_mb == 4096
    assert vm.resources.cpu_count == 3
    assert vm.power_state == PowerState.RUNNING
    names = client.call_names()
    assert names.index("stop") < names.index("clone")
    assert names.index("restart") < names.index("start")


def test_clone_unknown_template(settings):
    request = CloneRequest(name="vm1", template="ghost", ssh_key_name=KEY_NAME)
    outcome = clone_vm(request, _context(settings))
    assert outcome.stage == Stage.CHECK_TEMPLATE_EXISTS
    assert isinstance(outcome.cause, NotFound)


def test_clone_and_test_failing_command_is_still_a_successful_run(settings, tmp_path):
    client = FakeControlPlane()
    _stopped_template(client)
    transports = TransportFactory([("exit 7", (7, "tests failed\n"))])
    request = CloneRequest(
        name="vm1",
        template="alpine-template",
        ssh_key_name=KEY_NAME,
        repo_url="https://github.com/acme/widgets.git",
        test_command="exit 7",
        destroy_after=True,
    )

    outcome = clone_vm(request, _context(settings, client, transports=transports))

    assert outcome.status == OutcomeStatus.SUCCEEDED
    assert outcome.result.exit_code == 7
    assert outcome.result.status == TestStatus.FAILED
    assert outcome.stages[-4:] == [
        Stage.VERIFY_SSH,
        Stage.BOOTSTRAP_AND_TEST,
        Stage.REPORT_AND_PERSIST_RESULT,
        Stage.DESTROY_VM,
    ]
    assert not client.exists("vm1")
    assert Path(outcome.result.path, "status.txt").read_text() == "FAILED\n"
    _, kwargs = transports.created[0]
    assert kwargs["key_path"] == str(tmp_path / KEY_NAME)
    assert exit_code_for(outcome) == 2


def test_provision_failing_test_command_records_exit_code(settings):
    transports = TransportFactory([("exit 7", (7, "FAIL\n"))])
    request = ProvisionRequest(
        vm_name="vm1",
        vm_ip="192.168.64.20",
        ssh_key_name=KEY_NAME,
        repo_url="https://github.com/acme/widgets",
        test_command="exit 7",
    )

    outcome = provision_for_testing(request, _context(settings, transports=transports))

    assert outcome.status == OutcomeStatus.SUCCEEDED
    assert outcome.stages == PROVISION_STAGES
    record = outcome.result
    assert record.exit_code == 7
    assert record.status == TestStatus.FAILED
    assert Path(record.path, "exit-code.txt").read_text() == "7\n"
    assert Path(record.path, "test-output.log").read_text() == "FAIL\n"
    transport, _ = transports.created[0]
    assert transport.host == "192.168.64.20"


def test_provision_without_repository_updates_system_only(settings):
    request = ProvisionRequest(
        vm_name="vm1", vm_ip="192.168.64.20", ssh_key_name=KEY_NAME, test_command="make test"
    )
    outcome = provision_for_testing(request, _context(settings))
    assert outcome.succeeded
    assert outcome.stages == PROVISION_STAGES[:3]
    assert outcome.result is None
    assert exit_code_for(outcome) == 0


def test_provision_unreachable_vm_fails_preflight(settings):
    transports = TransportFactory([("exit", (255, "No route to host"))])
    request = ProvisionRequest(
        vm_name="vm1", vm_ip="192.168.64.99", ssh_key_name=KEY_NAME, test_command="make test"
    )
    outcome = provision_for_testing(request, _context(settings, transports=transports))
    assert outcome.stage == Stage.PREFLIGHT
    assert isinstance(outcome.cause, ConnectivityFailure)
    assert exit_code_for(outcome) == 1


def test_provision_update_failure_is_remote_command_failure(settings):
    transports = TransportFactory([("apk upgrade", (1, "ERROR"))])
    request = ProvisionRequest(
        vm_name="vm1", vm_ip="192.168.64.20", ssh_key_name=KEY_NAME, test_command="make test"
    )
    outcome = provision_for_testing(request, _context(settings, transports=transports))
    assert outcome.stage == Stage.UPDATE_SYSTEM
    assert isinstance(outcome.cause, RemoteCommandFailure)
    assert exit_code_for(outcome) == 2


def test_destroy_stops_running_vm_first(settings):
    client = FakeControlPlane()
    client.add_vm(VirtualMachine(name="vm1", power_state=PowerState.RUNNING))
    outcome = destroy_vm("vm1", _context(settings, client))
    assert outcome.succeeded
    assert outcome.stages == [Stage.CHECK_EXISTS, Stage.STOP_IF_RUNNING, Stage.DELETE]
    assert not client.exists("vm1")


def test_destroy_unknown_vm(settings):
    outcome = destroy_vm("ghost", _context(settings))
    assert outcome.stage == Stage.CHECK_EXISTS
    assert isinstance(outcome.cause, NotFound)
