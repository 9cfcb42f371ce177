import logging
import shlex
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from vm_pipeline.clients.commands import CommandResult
from vm_pipeline.errors import ConnectivityFailure, RemoteCommandFailure
from vm_pipeline.models import repo_dir_name
from vm_pipeline.retry import RetryPolicy


logger = logging.getLogger(__name__)

AUTHORIZED_KEYS = "/root/.ssh/authorized_keys"

ESSENTIAL_PACKAGES = [
    "git",
    "curl",
    "wget",
    "bash",
    "sudo",
    "build-base",
    "linux-headers",
    "ca-certificates",
    "openssl",
]


class Transport(Protocol):
    host: str

    def run(
        self,
        command: str,
        *,
        input_text: str | None = None,
        connect_timeout: int | None = None,
        timeout: float | None = None,
    ) -> CommandResult: ...

    def run_script(self, script: str, *, timeout: float | None = None) -> CommandResult: ...


@dataclass(frozen=True)
class ProjectType:
    name: str
    manifests: tuple[str, ...]
    install_script: str

    def detection_command(self, checkout_dir: str) -> str:
        checks = " || ".join(
            f"test -f {shlex.quote(f'{checkout_dir}/{m}')}" for m in self.manifests
        )
        return checks


PROJECT_TYPES: list[ProjectType] = [
    ProjectType(
        "python",
        ("requirements.txt", "pyproject.toml"),
        textwrap.dedent(
            """\
            apk add --no-cache python3 py3-pip
            cd {dir}
            if [ -f requirements.txt ]; then pip3 install --break-system-packages -r requirements.txt; fi
            if [ -f pyproject.toml ]; then pip3 install --break-system-packages .; fi
            """
        ),
    ),
    ProjectType(
        "nodejs",
        ("package.json",),
        "apk add --no-cache nodejs npm\ncd {dir}\nnpm install\n",
    ),
    ProjectType("go", ("go.mod",), "apk add --no-cache go\ncd {dir}\ngo mod download\n"),
    ProjectType(
        "rust", ("Cargo.toml",), "apk add --no-cache rust cargo\ncd {dir}\ncargo fetch\n"
    ),
    ProjectType("make", ("Makefile",), "apk add --no-cache make cmake\n"),
]


class RemoteBootstrapExecutor:
    def __init__(
        self,
        transport: Transport,
        *,
        work_dir: str = "/root/testing",
        preflight_timeout: int = 5,
    ):
        self.transport = transport
        self.work_dir = work_dir.rstrip("/")
        self.preflight_timeout = preflight_timeout

    def run(self, script: str) -> tuple[int, str]:
        result = self.transport.run_script(script)
        return result.exit_code, result.output

    def _checked(self, description: str, script: str) -> str:
        result = self.transport.run_script(script)
        if not result.ok:
            logger.error(
                "remote step failed host=%s step=%s exit_code=%s",
                self.transport.host,
                description,
                result.exit_code,
            )
            raise RemoteCommandFailure(description, result.exit_code, result.output)
        return result.output

    def preflight(self) -> None:
        result = self.transport.run("exit", connect_timeout=self.preflight_timeout)
        if not result.ok:
            raise ConnectivityFailure(
                self.transport.host, result.output.strip() or f"exit {result.exit_code}"
            )
        logger.info("ssh connected host=%s", self.transport.host)

    def update_system(self) -> None:
        self._checked("update system", "set -eu\napk update\napk upgrade\n")

    def install_essentials(self) -> None:
        packages = " ".join(ESSENTIAL_PACKAGES)
        self._checked("install essentials", f"set -eu\napk add --no-cache {packages}\n")

    def checkout_dir(self, repo_url: str) -> str:
        return f"{self.work_dir}/{repo_dir_name(repo_url)}"

    def clone_repository(self, repo_url: str) -> str:
        checkout = self.checkout_dir(repo_url)
        script = textwrap.dedent(
            f"""\
            set -eu
            mkdir -p {shlex.quote(self.work_dir)}
            if [ -d {shlex.quote(checkout)} ]; then
                cd {shlex.quote(checkout)}
                git pull
            else
                cd {shlex.quote(self.work_dir)}
                git clone {shlex.quote(repo_url)}
            fi
            """
        )
        self._checked("clone repository", script)
        logger.info("repository ready host=%s dir=%s", self.transport.host, checkout)
        return checkout

    def detect_project_types(self, checkout_dir: str) -> list[ProjectType]:
        detected: list[ProjectType] = []
        for project_type in PROJECT_TYPES:
            result = self.transport.run(project_type.detection_command(checkout_dir))
            if result.ok:
                logger.info("project type detected type=%s", project_type.name)
                detected.append(project_type)
        return detected

    def install_toolchains(
        self, checkout_dir: str, project_types: list[ProjectType]
    ) -> None:
        for project_type in project_types:
            script = "set -eu\n" + project_type.install_script.format(
                dir=shlex.quote(checkout_dir)
            )
            self._checked(f"install {project_type.name} toolchain", script)

    def inject_key(self, public_key: str, retry: RetryPolicy) -> bool:
        key = public_key.strip() + "\n"
        transmit = (
            "mkdir -p /root/.ssh && chmod 700 /root/.ssh"
            f" && cat > {AUTHORIZED_KEYS} && chmod 600 {AUTHORIZED_KEYS} && sync"
        )
        verify = f"test -f {AUTHORIZED_KEYS} && test -s {AUTHORIZED_KEYS}"
        for attempt in range(1, retry.attempts + 1):
            sent = self.transport.run(transmit, input_text=key)
            if not sent.ok:
                logger.warning(
                    "ssh key transmit failed host=%s attempt=%s/%s",
                    self.transport.host,
                    attempt,
                    retry.attempts,
                )
            elif self.transport.run(verify, connect_timeout=self.preflight_timeout).ok:
                logger.info(
                    "ssh key installed host=%s attempt=%s", self.transport.host, attempt
                )
                return True
            else:
                logger.warning(
                    "ssh key transmitted but verification failed host=%s attempt=%s/%s",
                    self.transport.host,
                    attempt,
                    retry.attempts,
                )
            retry.pause(attempt)
        logger.warning(
            "could not install ssh key after %s attempts host=%s; password-only access",
            retry.attempts,
            self.transport.host,
        )
        return False

    def run_tests(
        self,
        checkout_dir: str,
        command: str,
        capture_path: Path,
        repo_url: str | None = None,
    ) -> tuple[int, str]:
        script = textwrap.dedent(
            f"""\
            set +e
            cd {shlex.quote(checkout_dir)} || exit 1
            echo "========================================="
            echo "Test Execution Started"
            echo "Repository: "{shlex.quote(repo_url or '-')}
            echo "Command: "{shlex.quote(command)}
            echo "Timestamp: $(date)"
            echo "========================================="
            echo ""
            """
        )
        script += command + "\n"
        script += textwrap.dedent(
            """\
            TEST_EXIT=$?
            echo ""
            echo "========================================="
            echo "Test Complete - Exit Code: $TEST_EXIT"
            echo "========================================="
            exit $TEST_EXIT
            """
        )
        result = self.transport.run_script(script)
        capture_path.parent.mkdir(parents=True, exist_ok=True)
        capture_path.write_text(result.output, encoding="utf-8")
        logger.info(
            "test command finished host=%s exit_code=%s capture=%s",
            self.transport.host,
            result.exit_code,
            capture_path,
        )
        return result.exit_code, result.output
