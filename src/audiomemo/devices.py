from __future__ import annotations

import logging
import re
import subprocess
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from audiomemo.errors import CaptureError, DeviceResolutionError
from audiomemo.process import ensure_ffmpeg

logger = logging.getLogger(__name__)

DEFAULT_DEVICE = "default"

_SOURCE_LINE = re.compile(r"^\s+(\*?)\s*(\S+)\s+\[(.+)\]")


@dataclass(slots=True)
class Device:
    name: str
    description: str
    is_default: bool
    is_monitor: bool


def resolve_device(
    name: str,
    aliases: Mapping[str, str],
    groups: Mapping[str, Sequence[str]],
) -> list[str]:
    """Expand a device identifier into the raw capture device names.

    Resolution order: empty -> ["default"]; group -> every member alias;
    alias -> its raw name; anything else is already a raw name.
    """
    if not name:
        return [DEFAULT_DEVICE]

    if name in groups:
        devices: list[str] = []
        for alias in groups[name]:
            if alias not in aliases:
                raise DeviceResolutionError(
                    f"device group {name!r} references unknown alias {alias!r}",
                    group=name,
                    alias=alias,
                )
            devices.append(aliases[alias])
        if not devices:
            raise DeviceResolutionError(f"device group {name!r} has no devices", group=name)
        return devices

    if name in aliases:
        return [aliases[name]]

    return [name]


def input_format() -> str:
    if sys.platform == "darwin":
        return "avfoundation"
    return "pulse"


def parse_device_list(output: str) -> list[Device]:
    devices = []
    for line in output.splitlines():
        match = _SOURCE_LINE.match(line)
        if not match:
            continue
        name = match.group(2)
        devices.append(
            Device(
                name=name,
                description=match.group(3),
                is_default=match.group(1) == "*",
                is_monitor=name.endswith(".monitor"),
            )
        )
    return devices


def list_devices() -> list[Device]:
    ffmpeg = ensure_ffmpeg()
    proc = subprocess.run(
        [ffmpeg, "-hide_banner", "-sources", input_format()],
        check=False,
        capture_output=True,
        text=True,
    )
    # ffmpeg -sources prints the listing to stdout but may exit non-zero
    output = proc.stdout + proc.stderr
    devices = parse_device_list(output)
    if proc.returncode != 0 and not devices:
        tail = proc.stderr.strip()[-1000:] or "<no stderr>"
        raise CaptureError(f"Failed to list {input_format()} sources: {tail}")
    logger.info("Found %d %s source(s)", len(devices), input_format())
    return devices


def resolve_device_name(name: str, devices: Sequence[Device]) -> str:
    """Map a pretty description back to the raw device name, if it is one."""
    for device in devices:
        if device.name == name:
            return name
    for device in devices:
        if device.description == name:
            return device.name
    return name
