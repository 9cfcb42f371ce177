import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path


logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    argv: list[str]
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def run_command(
    argv: list[str],
    *,
    input_text: str | None = None,
    timeout: float | None = None,
    cwd: str | None = None,
) -> CommandResult:
    logger.debug("running command argv=%s", " ".join(argv))
    try:
        completed = subprocess.run(
            argv,
            input=input_text,
            stdin=subprocess.DEVNULL if input_text is None else None,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
            cwd=cwd,
            check=False,
        )
    except FileNotFoundError as exc:
        return CommandResult(argv=argv, exit_code=127, output=str(exc))
    except subprocess.TimeoutExpired as exc:
        output = exc.output or ""
        if isinstance(output, bytes):
            output = output.decode("utf-8", errors="replace")
        return CommandResult(
            argv=argv, exit_code=124, output=f"{output}\ntimed out after {timeout}s"
        )
    return CommandResult(
        argv=argv, exit_code=completed.returncode, output=completed.stdout or ""
    )


def which(cmd: str) -> str | None:
    if os.sep in cmd:
        path = Path(cmd)
        if path.exists() and os.access(path, os.X_OK):
            return str(path)
        return None
    return shutil.which(cmd)


def missing_tools(tools: dict[str, str]) -> list[str]:
    missing: list[str] = []
    for name, hint in tools.items():
        if which(name) is None:
            missing.append(f"{name} not found ({hint})")
    return missing
