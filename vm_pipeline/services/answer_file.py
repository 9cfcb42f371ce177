import logging
import socket
import textwrap
import threading
from pathlib import Path

import httpx
import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import PlainTextResponse

from vm_pipeline.clients.http import RequestFailure, request_with_retry
from vm_pipeline.errors import ConnectivityFailure, PrerequisiteMissing
from vm_pipeline.retry import RetryPolicy


logger = logging.getLogger(__name__)

SSH_KEY_PLACEHOLDER = "%%SSH_KEY%%"

DEFAULT_ANSWER_TEMPLATE = textwrap.dedent(
    """\
    KEYMAPOPTS="us us"
    HOSTNAMEOPTS="-n alpine-template"
    DEVDOPTS=mdev
    INTERFACESOPTS="auto lo
    iface lo inet loopback

    auto eth0
    iface eth0 inet dhcp
    "
    TIMEZONEOPTS="-z UTC"
    PROXYOPTS="none"
    APKREPOSOPTS="-1"
    USEROPTS="none"
    SSHDOPTS="-c openssh"
    ROOTSSHKEY="%%SSH_KEY%%"
    NTPOPTS="-c chrony"
    DISKOPTS="-m sys /dev/vda"
    LBUOPTS="none"
    APKCACHEOPTS="none"
    """
)


def render_answer_file(public_key: str, template: str | None = None) -> str:
    text = DEFAULT_ANSWER_TEMPLATE if template is None else template
    return text.replace(SSH_KEY_PLACEHOLDER, public_key.strip())


def write_answer_file(
    destination: str, public_key: str, template_path: str | None = None
) -> Path:
    template = None
    if template_path:
        template = Path(template_path).read_text(encoding="utf-8")
    path = Path(destination)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(render_answer_file(public_key, template), encoding="utf-8")
    logger.info("answer file prepared path=%s", path)
    return path


def remove_answer_file(path: str | Path) -> None:
    Path(path).unlink(missing_ok=True)


def detect_host_ip() -> str | None:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.connect(("192.0.2.1", 80))
        address = sock.getsockname()[0]
    except OSError:
        return None
    finally:
        sock.close()
    if address.startswith("127.") or address == "0.0.0.0":
        return None
    return address


def port_available(port: int, host: str = "0.0.0.0") -> bool:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
    except OSError:
        return False
    finally:
        sock.close()
    return True


def build_answer_app(answer_path: Path) -> FastAPI:
    app = FastAPI(title="Answer File Server", docs_url=None, redoc_url=None)

    @app.get("/{filename}", response_class=PlainTextResponse)
    def serve(filename: str) -> str:
        if filename != answer_path.name or not answer_path.is_file():
            raise HTTPException(status_code=404, detail="not found")
        return answer_path.read_text(encoding="utf-8")

    return app


class AnswerFileServer:
    def __init__(
        self,
        answer_path: str | Path,
        *,
        port: int,
        host_ip: str,
        bind_host: str = "0.0.0.0",
        ready_retry: RetryPolicy | None = None,
    ):
        self.answer_path = Path(answer_path)
        self.port = port
        self.host_ip = host_ip
        self.bind_host = bind_host
        self.ready_retry = ready_retry or RetryPolicy(attempts=5, sleep_sec=0.5)
        self._server: uvicorn.Server | None = None
        self._thread: threading.Thread | None = None

    @property
    def url(self) -> str:
        return f"http://{self.host_ip}:{self.port}/{self.answer_path.name}"

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> str:
        if self.running:
            return self.url
        if not port_available(self.port, self.bind_host):
            raise PrerequisiteMissing(
                [f"port {self.port} is already in use (leftover answer-file server?)"]
            )
        config = uvicorn.Config(
            build_answer_app(self.answer_path),
            host=self.bind_host,
            port=self.port,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        self._thread = threading.Thread(
            target=self._server.run, name="answer-file-server", daemon=True
        )
        self._thread.start()
        self._wait_ready()
        logger.info("answer file server running url=%s", self.url)
        return self.url

    def _wait_ready(self) -> None:
        probe = f"http://127.0.0.1:{self.port}/{self.answer_path.name}"
        try:
            with httpx.Client(timeout=2.0) as client:
                request_with_retry(client, "GET", probe, self.ready_retry)
        except RequestFailure as exc:
            self.stop()
            raise ConnectivityFailure(probe, exc.detail) from exc

    def stop(self) -> None:
        server, thread = self._server, self._thread
        self._server = None
        self._thread = None
        if server is None:
            return
        server.should_exit = True
        if thread is not None:
            thread.join(timeout=5)
            if thread.is_alive():
                logger.warning("answer file server did not stop within 5s")
        logger.info("answer file server stopped port=%s", self.port)

    def __enter__(self) -> "AnswerFileServer":
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()
