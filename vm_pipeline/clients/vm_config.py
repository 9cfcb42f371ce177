import logging
import plistlib
import random
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from vm_pipeline.errors import NotFound


logger = logging.getLogger(__name__)

# Case-sensitive: the hypervisor ignores "tcpserver".
SERIAL_MODE_TCP_SERVER = "TcpServer"
QEMU_MAC_PREFIX = "52:54:00"


class ConfigPatch(BaseModel):
    serial_tcp_port: int | None = Field(default=None, ge=1, le=65535)
    mac_address: str | None = Field(
        default=None, pattern=r"^([0-9A-Fa-f]{2}:){5}[0-9A-Fa-f]{2}$"
    )
    memory_mb: int | None = Field(default=None, ge=256)
    cpu_count: int | None = Field(default=None, ge=1)
    detach_install_media: bool = False

    def is_empty(self) -> bool:
        return self == ConfigPatch()


def random_mac(rng: random.Random | None = None) -> str:
    rng = rng or random.Random()
    tail = ":".join(f"{rng.randrange(256):02X}" for _ in range(3))
    return f"{QEMU_MAC_PREFIX}:{tail}"


def _is_install_media(drive: dict[str, Any]) -> bool:
    return drive.get("ImageType") == "CD" or bool(drive.get("Removable"))


def apply_patch(document: dict[str, Any], patch: ConfigPatch) -> list[str]:
    changes: list[str] = []

    if patch.serial_tcp_port is not None:
        serials = document.setdefault("Serial", [])
        if not serials:
            serials.append({})
        serial = serials[0]
        serial["Mode"] = SERIAL_MODE_TCP_SERVER
        serial.setdefault("Target", "Auto")
        serial["TcpPort"] = patch.serial_tcp_port
        changes.append(f"serial={SERIAL_MODE_TCP_SERVER}:{patch.serial_tcp_port}")

    if patch.mac_address is not None:
        networks = document.setdefault("Network", [])
        if not networks:
            networks.append({})
        networks[0]["MacAddress"] = patch.mac_address.upper()
        changes.append(f"mac={patch.mac_address.upper()}")

    if patch.memory_mb is not None:
        document.setdefault("System", {})["MemorySize"] = patch.memory_mb
        changes.append(f"memory_mb={patch.memory_mb}")

    if patch.cpu_count is not None:
        document.setdefault("System", {})["CPUCount"] = patch.cpu_count
        changes.append(f"cpu_count={patch.cpu_count}")

    if patch.detach_install_media:
        drives = document.get("Drive", [])
        kept = [drive for drive in drives if not _is_install_media(drive)]
        removed = len(drives) - len(kept)
        document["Drive"] = kept
        if removed:
            changes.append(f"detached_media={removed}")
        else:
            logger.info("no install media attached; nothing to detach")

    return changes


class PlistConfigStore:
    def __init__(self, documents_dir: str):
        self.documents_dir = Path(documents_dir).expanduser()

    def path_for(self, vm_name: str) -> Path:
        return self.documents_dir / f"{vm_name}.utm" / "config.plist"

    def load(self, vm_name: str) -> dict[str, Any]:
        path = self.path_for(vm_name)
        if not path.exists():
            raise NotFound(vm_name)
        with path.open("rb") as fh:
            return plistlib.load(fh)

    def save(self, vm_name: str, document: dict[str, Any]) -> None:
        path = self.path_for(vm_name)
        tmp_path = path.with_suffix(".plist.tmp")
        with tmp_path.open("wb") as fh:
            plistlib.dump(document, fh)
        tmp_path.replace(path)

    def edit(self, vm_name: str, patch: ConfigPatch) -> list[str]:
        document = self.load(vm_name)
        changes = apply_patch(document, patch)
        self.save(vm_name, document)
        logger.info("vm config edited vm=%s changes=%s", vm_name, ",".join(changes))
        return changes
