from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PipelineSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="VM_PIPELINE_", env_file=".env", extra="ignore"
    )

    backend: str = Field(default="utm")

    utm_app_path: str = Field(default="/Applications/UTM.app")
    utmctl_binary: str = Field(default="utmctl")
    utm_documents_dir: str = Field(
        default="~/Library/Containers/com.utmapp.UTM/Data/Documents"
    )
    vm_architecture: str = Field(default="aarch64")
    display_hardware: str = Field(default="virtio-gpu-gl-pci")

    template_name: str = Field(default="alpine-template")
    ram_gb: int = Field(default=2, ge=1)
    cpu_count: int = Field(default=2, ge=1)
    disk_gb: int = Field(default=20, ge=1)
    network_mode: str = Field(default="bridged")
    root_password: str = Field(default="LifeWithAlacrity2025")

    ssh_dir: str = Field(default="~/.ssh")
    ssh_key_name: str = Field(default="id_ed25519_alpine_vm")
    ssh_user: str = Field(default="root")
    ssh_connect_timeout_sec: int = Field(default=10, ge=1)
    ssh_preflight_timeout_sec: int = Field(default=5, ge=1)

    serial_host: str = Field(default="127.0.0.1")
    serial_port: int = Field(default=4444, ge=1)
    http_port: int = Field(default=8888, ge=1)
    host_ip: str | None = Field(default=None)
    answer_file_path: str = Field(default="/tmp/alpine-answer.txt")
    answer_template_path: str | None = Field(default=None)

    install_prompt_timeout_sec: int = Field(default=120, ge=1)
    install_complete_timeout_sec: int = Field(default=900, ge=1)

    ip_poll_attempts: int = Field(default=10, ge=1)
    ip_poll_interval_sec: float = Field(default=2, ge=0)
    key_inject_attempts: int = Field(default=5, ge=1)
    key_inject_backoff_sec: float = Field(default=5, ge=0)
    http_ready_attempts: int = Field(default=5, ge=1)
    http_ready_sleep_sec: float = Field(default=0.5, ge=0)

    iso_boot_wait_sec: float = Field(default=15, ge=0)
    post_install_wait_sec: float = Field(default=5, ge=0)
    disk_boot_wait_sec: float = Field(default=30, ge=0)
    clone_boot_wait_sec: float = Field(default=8, ge=0)
    stop_wait_sec: float = Field(default=3, ge=0)
    restart_quit_wait_sec: float = Field(default=3, ge=0)
    restart_launch_wait_sec: float = Field(default=5, ge=0)

    work_dir: str = Field(default="/root/testing")
    results_dir: str = Field(default="./results")
    test_command: str = Field(default="make test")

    def ssh_private_key_path(self, key_name: str | None = None) -> Path:
        return Path(self.ssh_dir).expanduser() / (key_name or self.ssh_key_name)

    def ssh_public_key_path(self, key_name: str | None = None) -> Path:
        private = self.ssh_private_key_path(key_name)
        return private.with_name(f"{private.name}.pub")

    def validate_backend(self) -> None:
        allowed = {"utm", "utm-cli", "fake"}
        if self.backend not in allowed:
            raise ValueError(
                f"unsupported backend {self.backend}; expected one of {sorted(allowed)}"
            )


@lru_cache(maxsize=1)
def get_settings() -> PipelineSettings:
    settings = PipelineSettings()
    settings.validate_backend()
    return settings
