import logging
from typing import Protocol

import pexpect

from vm_pipeline.clients.commands import missing_tools


logger = logging.getLogger(__name__)


class ConsoleTimeout(Exception):
    pass


class ConsoleClosed(Exception):
    pass


class Console(Protocol):
    def expect(self, pattern: str, timeout: float) -> str: ...

    def send(self, text: str) -> None: ...

    def tail(self) -> str: ...

    def close(self) -> None: ...


class SerialConsole:
    def __init__(self, host: str, port: int, encoding: str = "utf-8"):
        self.host = host
        self.port = port
        self.encoding = encoding
        self.child: pexpect.spawn | None = None

    @staticmethod
    def check_prerequisites() -> list[str]:
        return missing_tools({"socat": "brew install socat"})

    def open(self) -> "SerialConsole":
        cmd = f"socat - TCP:{self.host}:{self.port}"
        logger.info("connecting serial console host=%s port=%s", self.host, self.port)
        self.child = pexpect.spawn(cmd, encoding=self.encoding, codec_errors="replace")
        return self

    def _require_child(self) -> pexpect.spawn:
        if self.child is None:
            raise ConsoleClosed("serial console is not open")
        return self.child

    def expect(self, pattern: str, timeout: float) -> str:
        child = self._require_child()
        try:
            child.expect(pattern, timeout=timeout)
        except pexpect.TIMEOUT as exc:
            raise ConsoleTimeout(pattern) from exc
        except pexpect.EOF as exc:
            raise ConsoleClosed("serial console closed") from exc
        return child.before or ""

    def send(self, text: str) -> None:
        self._require_child().send(text)

    def tail(self) -> str:
        if self.child is None:
            return ""
        before = self.child.before if isinstance(self.child.before, str) else ""
        return before[-2000:]

    def close(self) -> None:
        child, self.child = self.child, None
        if child is None:
            return
        try:
            child.close(force=True)
        except pexpect.ExceptionPexpect as exc:
            logger.warning("serial console close failed: %s", exc)

    def __enter__(self) -> "SerialConsole":
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.close()
