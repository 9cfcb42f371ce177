class PipelineError(RuntimeError):
    pass


class PrerequisiteMissing(PipelineError):
    def __init__(self, missing: list[str]):
        self.missing = missing
        super().__init__("missing prerequisites: " + "; ".join(missing))


class AlreadyExists(PipelineError):
    def __init__(self, vm_name: str):
        self.vm_name = vm_name
        super().__init__(f"vm already exists: {vm_name}")


class NotFound(PipelineError):
    def __init__(self, vm_name: str):
        self.vm_name = vm_name
        super().__init__(f"vm not found: {vm_name}")


class ControlPlaneError(PipelineError):
    def __init__(self, command: list[str], exit_code: int, output: str):
        self.command = command
        self.exit_code = exit_code
        self.output = output
        super().__init__(
            f"control plane command failed ({exit_code}): {' '.join(command)}: "
            f"{output.strip()[:240]}"
        )


class ConnectivityFailure(PipelineError):
    def __init__(self, target: str, detail: str):
        self.target = target
        self.detail = detail
        super().__init__(f"cannot connect to {target}: {detail}")


class InstallTranscriptMismatch(PipelineError):
    def __init__(self, step: str, expected: str, tail: str = ""):
        self.step = step
        self.expected = expected
        self.tail = tail
        super().__init__(
            f"install transcript step {step!r} did not see {expected!r} in time"
        )


class ProbeTimeout(PipelineError, TimeoutError):
    def __init__(self, what: str, attempts: int):
        self.what = what
        self.attempts = attempts
        super().__init__(f"{what} not ready after {attempts} attempts")


class RemoteCommandFailure(PipelineError):
    def __init__(self, description: str, exit_code: int, output: str):
        self.description = description
        self.exit_code = exit_code
        self.output = output
        super().__init__(f"{description} failed with exit code {exit_code}")


class StageFailure(PipelineError):
    def __init__(
        self,
        *,
        workflow: str,
        stage: str,
        vm_name: str | None,
        cause: BaseException,
    ):
        self.workflow = workflow
        self.stage = stage
        self.vm_name = vm_name
        self.cause = cause
        super().__init__(
            f"{workflow} failed vm={vm_name} stage={stage}: {type(cause).__name__}: {cause}"
        )
