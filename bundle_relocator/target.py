"""Target resolution helpers.

This module is intentionally small and "pragmatic":

- It accepts ``native``, a bare platform name (e.g. ``linux``, ``macos``) or a
  target triple (e.g. ``x86_64-unknown-linux-gnu``, ``arm64-apple-ios17.0``).
- It produces the platform/architecture pair used to pick a bundle layout and
  a relocation toolchain.
"""

from dataclasses import dataclass
import platform
import re
import sys


class TargetResolutionError(ValueError):
    """Raised when a target spec cannot be resolved to a supported platform."""


LINUX: str = "linux"
MACOS: str = "macos"
IOS: str = "ios"
TVOS: str = "tvos"
VISIONOS: str = "visionos"
WINDOWS: str = "windows"

DARWIN_PLATFORMS: frozenset[str] = frozenset({MACOS, IOS, TVOS, VISIONOS})
SUPPORTED_PLATFORMS: tuple[str, ...] = (LINUX, MACOS, IOS, TVOS, VISIONOS, WINDOWS)


@dataclass(frozen=True, slots=True)
class TargetConfig:
    """Bundling target.

    :ivar platform: One of :data:`SUPPORTED_PLATFORMS`.
    :ivar arch: Normalized architecture (e.g. ``x86_64``, ``arm64``).
    """

    platform: str
    arch: str

    @property
    def is_darwin(self) -> bool:
        return self.platform in DARWIN_PLATFORMS


_OS_VERSION_RE: re.Pattern[str] = re.compile(r"^(?P<os>[a-z]+?)(?P<version>[\d.]*)$")

_ARCH_ALIASES: dict[str, str] = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "x64": "x86_64",
    "aarch64": "arm64",
    "arm64": "arm64",
    "i686": "i686",
    "x86": "i686",
    "armv7": "armv7",
    "armv7l": "armv7",
}

_OS_ALIASES: dict[str, str] = {
    "linux": LINUX,
    "macos": MACOS,
    "macosx": MACOS,
    "darwin": MACOS,
    "osx": MACOS,
    "ios": IOS,
    "tvos": TVOS,
    "xros": VISIONOS,
    "visionos": VISIONOS,
    "windows": WINDOWS,
    "win32": WINDOWS,
}


def resolve_target_config(*, target: str, arch_override: str | None = None) -> TargetConfig:
    """Resolve a user-supplied target into a :class:`~TargetConfig`.

    :param target: ``native``, a platform name or a target triple.
    :param arch_override: Optional explicit architecture.
    :returns: Resolved target config.
    :raises TargetResolutionError: If the target cannot be resolved.
    """

    plat: str
    arch: str
    if target == "native":
        plat = _native_platform()
        arch = _normalize_arch(platform.machine())
    elif target.lower() in _OS_ALIASES:
        plat = _OS_ALIASES[target.lower()]
        arch = _normalize_arch(platform.machine())
    else:
        plat, arch = _parse_triple(target)

    if arch_override is not None:
        arch = _normalize_arch(arch_override)

    return TargetConfig(platform=plat, arch=arch)


def _native_platform() -> str:
    """Map the host OS to a platform name.

    :returns: Platform name.
    :raises TargetResolutionError: If the host OS is not supported.
    """

    if sys.platform.startswith("linux") is True:
        return LINUX
    if sys.platform == "darwin":
        return MACOS
    if sys.platform == "win32":
        return WINDOWS
    raise TargetResolutionError(f"Unsupported host platform {sys.platform!r}; pass --target explicitly.")


def _parse_triple(target: str) -> tuple[str, str]:
    """Split a target triple into platform and architecture.

    :param target: Triple such as ``x86_64-unknown-linux-gnu`` or
        ``arm64-apple-macosx14.0``.
    :returns: ``(platform, arch)``.
    :raises TargetResolutionError: If the triple is not recognized.
    """

    parts: list[str] = target.lower().split("-")
    if len(parts) < 3:
        raise TargetResolutionError(
            f"Unrecognized target spec {target!r}. Provide a target triple or one of: "
            f"{', '.join(SUPPORTED_PLATFORMS)}."
        )

    arch: str = _normalize_arch(parts[0])
    os_part: str = parts[2]
    m = _OS_VERSION_RE.match(os_part)
    os_name: str = m.group("os") if m is not None else os_part

    plat: str | None = _OS_ALIASES.get(os_name)
    if plat is None:
        raise TargetResolutionError(f"Unrecognized OS in target triple {target!r} (os={os_part!r}).")
    return plat, arch


def _normalize_arch(machine: str) -> str:
    """Normalize architecture spellings.

    :param machine: Architecture name as reported by a triple or the host.
    :returns: Normalized name.
    :raises TargetResolutionError: If the architecture is not known.
    """

    arch: str | None = _ARCH_ALIASES.get(machine.lower())
    if arch is None:
        raise TargetResolutionError(f"Unsupported architecture {machine!r}.")
    return arch
