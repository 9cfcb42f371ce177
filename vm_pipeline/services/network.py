import ipaddress
import logging
import re
import time
from collections.abc import Callable

from vm_pipeline.clients.commands import CommandResult, run_command
from vm_pipeline.clients.control_plane import ControlPlaneClient
from vm_pipeline.errors import PipelineError, ProbeTimeout


logger = logging.getLogger(__name__)

_ARP_LINE = re.compile(r"\((?P<ip>[0-9.]+)\) at (?P<mac>[0-9A-Fa-f:]+)")


def first_ipv4(text: str | None) -> str | None:
    if not text:
        return None
    for line in text.splitlines():
        candidate = line.strip()
        try:
            ipaddress.IPv4Address(candidate)
        except ValueError:
            continue
        return candidate
    return None


def _normalize_mac(mac: str) -> str:
    # arp prints "52:54:0:a:b:c" with leading zeros dropped.
    return ":".join(part.zfill(2) for part in mac.lower().split(":"))


def lookup_ip_by_mac(
    mac: str, run: Callable[..., CommandResult] = run_command
) -> str | None:
    result = run(["arp", "-an"])
    if not result.ok:
        return None
    wanted = _normalize_mac(mac)
    for match in _ARP_LINE.finditer(result.output):
        if _normalize_mac(match.group("mac")) == wanted:
            return match.group("ip")
    return None


def await_ip(
    client: ControlPlaneClient,
    vm_name: str,
    *,
    max_attempts: int,
    interval: float,
    mac: str | None = None,
    arp_lookup: Callable[[str], str | None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> str:
    lookup = arp_lookup or lookup_ip_by_mac
    for attempt in range(1, max_attempts + 1):
        try:
            raw = client.get_ip(vm_name)
        except PipelineError as exc:
            logger.debug("ip query failed vm=%s attempt=%s: %s", vm_name, attempt, exc)
            raw = None
        address = first_ipv4(raw)
        if address is None and mac:
            address = lookup(mac)
        if address is not None:
            logger.info(
                "vm address detected vm=%s ip=%s attempt=%s", vm_name, address, attempt
            )
            return address
        logger.debug(
            "vm address not ready vm=%s attempt=%s/%s", vm_name, attempt, max_attempts
        )
        if attempt < max_attempts:
            sleep(interval)
    raise ProbeTimeout(f"ip address of {vm_name}", max_attempts)
