import logging
from datetime import datetime
from pathlib import Path

from vm_pipeline.models import ResultRecord, TestStatus
from vm_pipeline.schemas import ResultMetadata


logger = logging.getLogger(__name__)

OUTPUT_FILE = "test-output.log"
EXIT_CODE_FILE = "exit-code.txt"
STATUS_FILE = "status.txt"
METADATA_FILE = "metadata.json"


def allocate_result_dir(results_root: str | Path, now: datetime | None = None) -> Path:
    root = Path(results_root)
    root.mkdir(parents=True, exist_ok=True)
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    candidate = root / stamp
    suffix = 1
    while True:
        try:
            candidate.mkdir()
        except FileExistsError:
            candidate = root / f"{stamp}-{suffix}"
            suffix += 1
            continue
        return candidate


def status_for_exit_code(exit_code: int) -> TestStatus:
    return TestStatus.PASSED if exit_code == 0 else TestStatus.FAILED


def persist_result(
    directory: Path,
    *,
    vm_name: str,
    vm_ip: str,
    repo_url: str | None,
    command: str,
    exit_code: int,
    output: str,
    timestamp: datetime | None = None,
) -> ResultRecord:
    status = status_for_exit_code(exit_code)
    when = timestamp or datetime.now()
    output_path = directory / OUTPUT_FILE
    # The executor normally streams the capture here already.
    if not output_path.exists():
        output_path.write_text(output, encoding="utf-8")
    (directory / EXIT_CODE_FILE).write_text(f"{exit_code}\n", encoding="utf-8")
    (directory / STATUS_FILE).write_text(f"{status.value}\n", encoding="utf-8")
    metadata = ResultMetadata(
        vm_name=vm_name,
        vm_ip=vm_ip,
        repo_url=repo_url,
        command=command,
        timestamp=when,
        exit_code=exit_code,
        status=status.value,
    )
    (directory / METADATA_FILE).write_text(
        metadata.model_dump_json(indent=2) + "\n", encoding="utf-8"
    )
    logger.info(
        "result persisted vm=%s exit_code=%s status=%s path=%s",
        vm_name,
        exit_code,
        status.value,
        directory,
    )
    return ResultRecord(
        path=str(directory),
        vm_name=vm_name,
        vm_ip=vm_ip,
        repo_url=repo_url,
        command=command,
        exit_code=exit_code,
        status=status,
        timestamp=when,
    )
