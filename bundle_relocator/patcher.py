"""Binary metadata patching and ad-hoc signing.

Patchers rewrite a binary in place. Both operations return whether the
binary's bytes changed, so that callers only re-sign binaries that were
actually mutated, and so that re-running a bundling operation leaves already
patched binaries untouched.
"""

import logging
import pathlib

from bundle_relocator.listing import parse_otool_rpaths
from bundle_relocator.tools import ToolError, ToolInvocationError, run_tool


class PatchError(ToolError):
    """Raised when a binary's load metadata cannot be rewritten.

    :ivar binary: The binary being patched.
    :ivar old: Previous value (``None`` for default search path rewrites).
    :ivar new: Requested value.
    """

    def __init__(
        self,
        *,
        binary: pathlib.Path,
        old: str | None,
        new: str,
        cause: ToolInvocationError,
    ) -> None:
        self.binary: pathlib.Path = binary
        self.old: str | None = old
        self.new: str = new
        if old is None:
            message: str = f"Failed to set the default search path of '{binary}' to {new!r}"
        else:
            message = f"Failed to update library reference {old!r} to {new!r} in '{binary}'"
        super().__init__(f"{message}: {cause.output.strip() or cause}")


class SigningError(ToolError):
    """Raised when an ad-hoc signature cannot be applied."""


def _logger(logger: logging.Logger | None) -> logging.Logger:
    return logger if logger is not None else logging.getLogger("bundle_relocator")


class PatchElfPatcher:
    """Rewrites ELF ``DT_NEEDED`` entries and runpaths with ``patchelf``."""

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger: logging.Logger = _logger(logger)

    def change_reference(self, binary: pathlib.Path, old: str, new: str) -> bool:
        if old == new:
            return False
        try:
            run_tool("patchelf", ["--replace-needed", old, new, str(binary)], logger=self.logger)
        except ToolInvocationError as e:
            raise PatchError(binary=binary, old=old, new=new, cause=e) from e
        return True

    def set_search_path(self, binary: pathlib.Path, value: str) -> bool:
        try:
            current: str = run_tool("patchelf", ["--print-rpath", str(binary)], logger=self.logger).stdout.strip()
            if current == value:
                return False
            run_tool("patchelf", ["--set-rpath", value, str(binary)], logger=self.logger)
        except ToolInvocationError as e:
            raise PatchError(binary=binary, old=None, new=value, cause=e) from e
        return True


class InstallNameToolPatcher:
    """Rewrites Mach-O install names and rpaths with ``install_name_tool``.

    Rpaths are additive on Darwin: :meth:`set_search_path` adds the requested
    rpath unless the binary already carries it.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger: logging.Logger = _logger(logger)

    def change_reference(self, binary: pathlib.Path, old: str, new: str) -> bool:
        if old == new:
            return False
        try:
            run_tool("install_name_tool", ["-change", old, new, str(binary)], logger=self.logger)
        except ToolInvocationError as e:
            raise PatchError(binary=binary, old=old, new=new, cause=e) from e
        return True

    def rpaths(self, binary: pathlib.Path) -> list[str]:
        """Read a binary's ``LC_RPATH`` entries.

        :param binary: Mach-O file.
        :returns: Its rpaths.
        """

        out = run_tool("otool", ["-l", str(binary)], logger=self.logger)
        return parse_otool_rpaths(out.stdout)

    def set_search_path(self, binary: pathlib.Path, value: str) -> bool:
        try:
            if value in self.rpaths(binary):
                return False
            run_tool("install_name_tool", ["-add_rpath", value, str(binary)], logger=self.logger)
        except ToolInvocationError as e:
            raise PatchError(binary=binary, old=None, new=value, cause=e) from e
        return True


class NullPatcher:
    """Patcher for platforms that find bundled libraries without rewrites.

    Windows looks for DLLs next to the executable first, so references are
    never rewritten there.
    """

    def change_reference(self, binary: pathlib.Path, old: str, new: str) -> bool:
        return False

    def set_search_path(self, binary: pathlib.Path, value: str) -> bool:
        return False


class CodesignSigner:
    """Applies an ad-hoc signature with ``codesign``.

    Darwin refuses to load a binary whose signature no longer matches its
    bytes, so every patched Mach-O file is re-signed. No developer identity is
    involved.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger: logging.Logger = _logger(logger)

    def sign(self, binary: pathlib.Path) -> None:
        try:
            run_tool("codesign", ["--force", "-s", "-", str(binary)], logger=self.logger)
        except ToolInvocationError as e:
            raise SigningError(
                f"Failed to sign '{binary}' using the ad-hoc signing method: {e.output.strip() or e}"
            ) from e


class NullSigner:
    """Signer for platforms without load-time signature checks."""

    def sign(self, binary: pathlib.Path) -> None:
        return None
