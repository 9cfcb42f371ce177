import pytest

from vm_pipeline.clients.commands import CommandResult, run_command
from vm_pipeline.errors import ConnectivityFailure, RemoteCommandFailure
from vm_pipeline.retry import RetryPolicy
from vm_pipeline.services.bootstrap import RemoteBootstrapExecutor


class ScriptedTransport:
    def __init__(self, rules=None, host="192.168.64.10"):
        self.host = host
        self.rules = rules or []
        self.commands = []

    def run(self, command, *, input_text=None, connect_timeout=None, timeout=None):
        self.commands.append((command, input_text))
        text = command if input_text is None else f"{command}\n{input_text}"
        for rule in self.rules:
            if rule[0] in text:
                exit_code, output = rule[1](text) if callable(rule[1]) else rule[1]
                return CommandResult(argv=["ssh", command], exit_code=exit_code, output=output)
        return CommandResult(argv=["ssh", command], exit_code=0, output="")

    def run_script(self, script, *, timeout=None):
        return self.run("sh -s", input_text=script, timeout=timeout)


def _executor(rules=None):
    transport = ScriptedTransport(rules)
    return RemoteBootstrapExecutor(transport, work_dir="/root/testing/"), transport


def test_preflight_failure_is_connectivity_failure():
    executor, _ = _executor([("exit", (255, "Connection refused"))])
    with pytest.raises(ConnectivityFailure) as exc_info:
        executor.preflight()
    assert "Connection refused" in str(exc_info.value)


def test_install_essentials_failure_raises():
    executor, _ = _executor([("apk add", (1, "ERROR: unable to select packages"))])
    with pytest.raises(RemoteCommandFailure) as exc_info:
        executor.install_essentials()
    assert exc_info.value.exit_code == 1


def test_update_system_runs_update_and_upgrade():
    executor, transport = _executor()
    executor.update_system()
    script = transport.commands[0][1]
    assert "apk update" in script
    assert "apk upgrade" in script


def test_clone_repository_uses_basename_without_git_suffix():
    executor, transport = _executor()
    checkout = executor.clone_repository("https://github.com/acme/widgets.git")
    assert checkout == "/root/testing/widgets"
    script = transport.commands[0][1]
    assert "git clone https://github.com/acme/widgets.git" in script
    assert "git pull" in script


def test_detect_project_types_checks_each_type_separately():
    present = ("/root/testing/app/pyproject.toml", "/root/testing/app/Makefile")

    def exists(text):
        return (0, "") if any(path in text for path in present) else (1, "")

    executor, transport = _executor([("test -f", exists)])
    detected = executor.detect_project_types("/root/testing/app")
    assert [t.name for t in detected] == ["python", "make"]
    assert len(transport.commands) == 5


def test_install_toolchains_runs_each_detected_type():
    executor, transport = _executor(
        [("test -f /root/testing/app/go.mod", (0, "")), ("test -f", (1, ""))]
    )
    checkout = "/root/testing/app"
    executor.install_toolchains(checkout, executor.detect_project_types(checkout))
    scripts = [input_text for command, input_text in transport.commands if command == "sh -s"]
    assert len(scripts) == 1
    assert "apk add --no-cache go" in scripts[0]
    assert "go mod download" in scripts[0]


def test_inject_key_succeeds_on_third_attempt():
    attempts = {"n": 0}

    def transmit(text):
        attempts["n"] += 1
        return (0, "") if attempts["n"] >= 3 else (255, "Permission denied")

    executor, transport = _executor([("cat > /root/.ssh/authorized_keys", transmit)])
    sleeps = []
    ok = executor.inject_key("ssh-ed25519 AAAA user@host", RetryPolicy(5, 5, sleeps.append))
    assert ok is True
    assert attempts["n"] == 3
    assert sleeps == [5, 5]
    sent_key = transport.commands[0][1]
    assert sent_key == "ssh-ed25519 AAAA user@host\n"


def test_inject_key_retries_when_verification_fails():
    checks = {"n": 0}

    def verify(text):
        checks["n"] += 1
        return (0, "") if checks["n"] == 2 else (1, "")

    executor, _ = _executor([("test -s", verify)])
    assert executor.inject_key("ssh-ed25519 AAAA", RetryPolicy(5, 0)) is True
    assert checks["n"] == 2


def test_inject_key_gives_up_after_budget():
    executor, transport = _executor([("authorized_keys", (255, "timeout"))])
    sleeps = []
    assert executor.inject_key("ssh-ed25519 AAAA", RetryPolicy(5, 5, sleeps.append)) is False
    assert len(transport.commands) == 5
    assert sleeps == [5, 5, 5, 5]


def test_run_tests_reports_exit_code_verbatim(tmp_path):
    executor, transport = _executor([("exit 7", (7, "banner\nfailing test\n"))])
    capture = tmp_path / "out" / "test-output.log"
    exit_code, output = executor.run_tests(
        "/root/testing/app", "exit 7", capture, repo_url="https://x/app.git"
    )
    assert exit_code == 7
    assert capture.read_text() == output
    script = transport.commands[0][1]
    assert script.startswith("set +e\n")
    assert "cd /root/testing/app" in script
    assert "exit $TEST_EXIT" in script


class LocalShellTransport:
    host = "localhost"

    def run(self, command, *, input_text=None, connect_timeout=None, timeout=None):
        return run_command(["sh", "-c", command], input_text=input_text, timeout=timeout)

    def run_script(self, script, *, timeout=None):
        return run_command(["sh", "-s"], input_text=script, timeout=timeout)


def test_run_tests_banner_keeps_hostile_repo_url_inert(tmp_path):
    marker = tmp_path / "pwned"
    executor = RemoteBootstrapExecutor(LocalShellTransport(), work_dir=str(tmp_path))
    repo_url = f'https://example.com/o"wner/$(touch {marker})/repo.git'
    exit_code, output = executor.run_tests(
        str(tmp_path), "exit 7", tmp_path / "test-output.log", repo_url=repo_url
    )
    assert exit_code == 7
    assert f"Repository: {repo_url}" in output
    assert not marker.exists()


def test_run_returns_exit_code_and_output():
    executor, _ = _executor([("uname", (0, "Linux\n"))])
    assert executor.run("uname -s") == (0, "Linux\n")
