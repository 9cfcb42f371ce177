import pytest

from vm_pipeline.config import PipelineSettings, get_settings


def test_defaults(monkeypatch):
    for name in ("VM_PIPELINE_TEMPLATE_NAME", "VM_PIPELINE_SERIAL_PORT"):
        monkeypatch.delenv(name, raising=False)
    settings = PipelineSettings()
    assert settings.template_name == "alpine-template"
    assert settings.serial_port == 4444
    assert settings.http_port == 8888
    assert settings.ip_poll_attempts == 10
    assert settings.key_inject_attempts == 5


def test_env_overrides(monkeypatch):
    monkeypatch.setenv("VM_PIPELINE_IP_POLL_ATTEMPTS", "3")
    monkeypatch.setenv("VM_PIPELINE_BACKEND", "utm-cli")
    get_settings.cache_clear()
    try:
        settings = get_settings()
        assert settings.ip_poll_attempts == 3
        assert settings.backend == "utm-cli"
    finally:
        get_settings.cache_clear()


def test_unknown_backend_rejected():
    with pytest.raises(ValueError):
        PipelineSettings(backend="vmware").validate_backend()


def test_ssh_key_paths(tmp_path):
    settings = PipelineSettings(ssh_dir=str(tmp_path), ssh_key_name="id_test")
    assert settings.ssh_private_key_path() == tmp_path / "id_test"
    assert settings.ssh_public_key_path("other") == tmp_path / "other.pub"
