from datetime import datetime

from pydantic import BaseModel, Field


class TemplateRequest(BaseModel):
    name: str = Field(min_length=1)
    iso_path: str | None = None
    ram_gb: int = Field(ge=1)
    cpu_count: int = Field(ge=1)
    disk_gb: int = Field(ge=1)
    root_password: str = Field(min_length=1)
    ssh_key_name: str = Field(min_length=1)
    network_mode: str = "bridged"
    force: bool = False

    @property
    def memory_mb(self) -> int:
        return self.ram_gb * 1024


class CloneRequest(BaseModel):
    name: str | None = None
    template: str = Field(min_length=1)
    ram_gb: int | None = Field(default=None, ge=1)
    cpu_count: int | None = Field(default=None, ge=1)
    ssh_key_name: str = Field(min_length=1)
    repo_url: str | None = None
    test_command: str | None = None
    destroy_after: bool = False
    force: bool = False

    @property
    def memory_mb(self) -> int | None:
        return None if self.ram_gb is None else self.ram_gb * 1024


class ProvisionRequest(BaseModel):
    vm_name: str = Field(min_length=1)
    vm_ip: str = Field(min_length=1)
    ssh_key_name: str = Field(min_length=1)
    repo_url: str | None = None
    test_command: str = Field(min_length=1)


class ResultMetadata(BaseModel):
    vm_name: str
    vm_ip: str
    repo_url: str | None
    command: str
    timestamp: datetime
    exit_code: int
    status: str
