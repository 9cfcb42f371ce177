import logging
from collections.abc import Callable

from vm_pipeline.clients.commands import CommandResult, missing_tools, run_command


logger = logging.getLogger(__name__)

Runner = Callable[..., CommandResult]

# Guests are throwaway; their host keys change on every clone.
SSH_OPTIONS = [
    "-o",
    "StrictHostKeyChecking=no",
    "-o",
    "UserKnownHostsFile=/dev/null",
    "-o",
    "LogLevel=ERROR",
]


class SSHTransport:
    def __init__(
        self,
        host: str,
        *,
        user: str = "root",
        key_path: str | None = None,
        password: str | None = None,
        connect_timeout: int = 10,
        run: Runner = run_command,
    ):
        if key_path is None and password is None:
            raise ValueError("ssh transport needs a key_path or a password")
        self.host = host
        self.user = user
        self.key_path = key_path
        self.password = password
        self.connect_timeout = connect_timeout
        self._run = run

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}"

    def check_prerequisites(self) -> list[str]:
        return ssh_tool_problems(password_auth=self.key_path is None)

    def build_argv(self, command: str, connect_timeout: int | None = None) -> list[str]:
        timeout = connect_timeout or self.connect_timeout
        argv: list[str] = []
        if self.key_path is None:
            argv += ["sshpass", "-p", self.password or ""]
        argv += ["ssh", *SSH_OPTIONS, "-o", f"ConnectTimeout={timeout}"]
        if self.key_path is not None:
            argv += ["-i", self.key_path, "-o", "BatchMode=yes"]
        argv += [self.target, command]
        return argv

    def run(
        self,
        command: str,
        *,
        input_text: str | None = None,
        connect_timeout: int | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        argv = self.build_argv(command, connect_timeout)
        logger.debug("ssh run target=%s command=%s", self.target, command)
        result = self._run(argv, input_text=input_text, timeout=timeout)
        # Never echo the password back through logs or results.
        if self.password:
            result.argv = [a if a != self.password else "***" for a in result.argv]
        return result

    def run_script(self, script: str, *, timeout: float | None = None) -> CommandResult:
        return self.run("sh -s", input_text=script, timeout=timeout)


def ssh_tool_problems(password_auth: bool = False) -> list[str]:
    tools = {"ssh": "OpenSSH client"}
    if password_auth:
        tools["sshpass"] = "brew install sshpass"
    return missing_tools(tools)
