"""Host platform detection for the per-platform engine cache."""

from __future__ import annotations

import enum
import functools
import platform
import sys
from dataclasses import dataclass


class OSFamily(enum.Enum):
    WINDOWS = "windows"
    UNIX = "unix"


# platform.machine() spellings -> names the update channel publishes builds under
_ARCH_MAP = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "i386": "ia32",
    "i686": "ia32",
    "x86": "ia32",
    "aarch64": "arm64",
    "arm64": "arm64",
    "armv7l": "arm",
    "armv6l": "arm",
}

_SYSTEM_MAP = {"windows": "win32", "linux": "linux", "darwin": "darwin"}


@dataclass(frozen=True)
class PlatformKey:
    """Operating system and architecture a cached engine build belongs to."""

    os_family: OSFamily
    system: str
    arch: str

    @property
    def is_windows(self) -> bool:
        return self.os_family is OSFamily.WINDOWS

    @property
    def executable_suffix(self) -> str:
        return ".exe" if self.is_windows else ""

    def binary_name(self, engine_name: str) -> str:
        """Return ``<name>-<arch>-<system>[.exe]``."""
        return f"{engine_name}-{self.arch}-{self.system}{self.executable_suffix}"


def normalize_arch(machine: str) -> str:
    """Map a raw machine string onto the channel's architecture names."""
    lowered = machine.strip().lower()
    return _ARCH_MAP.get(lowered, lowered or "unknown")


def normalize_system(system: str) -> str:
    lowered = system.strip().lower()
    return _SYSTEM_MAP.get(lowered, lowered or sys.platform)


def build_platform_key(system: str, machine: str) -> PlatformKey:
    normalized = normalize_system(system)
    family = OSFamily.WINDOWS if normalized == "win32" else OSFamily.UNIX
    return PlatformKey(os_family=family, system=normalized, arch=normalize_arch(machine))


@functools.lru_cache(maxsize=1)
def detect_platform_key() -> PlatformKey:
    """Platform key of the running interpreter, computed once per process."""
    return build_platform_key(platform.system(), platform.machine())
