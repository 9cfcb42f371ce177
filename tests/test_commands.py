import subprocess

from vm_pipeline.clients import commands
from vm_pipeline.clients.commands import run_command


class RecordingRun:
    def __init__(self):
        self.kwargs = []

    def __call__(self, argv, **kwargs):
        self.kwargs.append(kwargs)
        return subprocess.CompletedProcess(argv, 0, stdout="ok\n")


def test_run_command_without_input_does_not_inherit_stdin(monkeypatch):
    recorder = RecordingRun()
    monkeypatch.setattr(commands.subprocess, "run", recorder)
    result = run_command(["ssh", "root@10.0.0.5", "exit"])
    assert result.ok
    assert recorder.kwargs[0]["stdin"] is subprocess.DEVNULL
    assert recorder.kwargs[0]["input"] is None


def test_run_command_with_input_pipes_it(monkeypatch):
    recorder = RecordingRun()
    monkeypatch.setattr(commands.subprocess, "run", recorder)
    run_command(["ssh", "root@10.0.0.5", "sh -s"], input_text="apk update\n")
    assert recorder.kwargs[0]["stdin"] is None
    assert recorder.kwargs[0]["input"] == "apk update\n"


def test_run_command_missing_binary_is_127():
    result = run_command(["vm-pipeline-no-such-binary"])
    assert result.exit_code == 127
