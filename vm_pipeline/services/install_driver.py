import logging
from dataclasses import dataclass

from vm_pipeline.clients.console import Console, ConsoleClosed, ConsoleTimeout
from vm_pipeline.errors import InstallTranscriptMismatch


logger = logging.getLogger(__name__)

SHELL_PROMPT = r"localhost:~# ?"
INSTALL_BANNER = r"Installation is complete"


@dataclass(frozen=True)
class TranscriptStep:
    name: str
    expect: str
    send: str | None
    timeout: float
    secret: bool = False


def alpine_transcript(
    *,
    answer_url: str,
    root_password: str,
    prompt_timeout: float,
    install_timeout: float,
    target_root_device: str = "/dev/vda3",
) -> list[TranscriptStep]:
    guest_agent = (
        f"mount {target_root_device} /mnt"
        " && apk add --root /mnt --no-cache qemu-guest-agent"
        " && chroot /mnt rc-update add qemu-guest-agent default"
        " && sync && umount /mnt"
    )
    return [
        TranscriptStep("login", r"login:", "root\r", prompt_timeout),
        TranscriptStep(
            "run-setup",
            SHELL_PROMPT,
            f"setup-alpine -f {answer_url}\r",
            prompt_timeout,
        ),
        TranscriptStep(
            "root-password",
            r"New password:",
            f"{root_password}\r",
            prompt_timeout,
            secret=True,
        ),
        TranscriptStep(
            "root-password-confirm",
            r"Retype password:",
            f"{root_password}\r",
            prompt_timeout,
            secret=True,
        ),
        TranscriptStep(
            "confirm-disk-erase",
            r"Erase the above disk\(s\) and continue\? \(y/n\)",
            "y\r",
            install_timeout,
        ),
        TranscriptStep("install-complete", INSTALL_BANNER, None, install_timeout),
        TranscriptStep(
            "install-guest-agent", SHELL_PROMPT, f"{guest_agent}\r", prompt_timeout
        ),
        TranscriptStep("finished", SHELL_PROMPT, None, install_timeout),
    ]


class InstallDriver:
    def __init__(self, steps: list[TranscriptStep], wake: str = "\r"):
        if not steps:
            raise ValueError("install transcript is empty")
        self.steps = steps
        self.wake = wake

    def run(self, console: Console) -> list[str]:
        completed: list[str] = []
        if self.wake:
            console.send(self.wake)
        for step in self.steps:
            logger.info("install step waiting step=%s expect=%r", step.name, step.expect)
            try:
                console.expect(step.expect, timeout=step.timeout)
            except (ConsoleTimeout, ConsoleClosed) as exc:
                logger.error(
                    "install transcript mismatch step=%s expect=%r reason=%s",
                    step.name,
                    step.expect,
                    exc.__class__.__name__,
                )
                raise InstallTranscriptMismatch(
                    step.name, step.expect, console.tail()
                ) from exc
            if step.send is not None:
                shown = "***" if step.secret else step.send.strip()
                logger.info("install step answering step=%s send=%s", step.name, shown)
                console.send(step.send)
            completed.append(step.name)
        logger.info("install transcript complete steps=%s", len(completed))
        return completed
