"""External tool invocation.

Every platform adapter (dependency listing, metadata patching, signing) goes
through :func:`run_tool`, which locates the command on ``PATH`` and runs it as
a blocking subprocess. There is no timeout; a hung tool hangs the bundling
operation until it is interrupted at the process level.
"""

from dataclasses import dataclass
import logging
import os
import pathlib
import shutil
import subprocess


class ToolError(RuntimeError):
    """Base class for failures of external tools."""


class ToolNotFoundError(ToolError):
    """Raised when a required command cannot be located.

    :ivar tool: Command name that was looked up.
    """

    def __init__(self, tool: str, remediation: str | None = None) -> None:
        self.tool: str = tool
        message: str = f"Command {tool!r} not found, but required to bundle this target."
        if remediation is not None:
            message += f" {remediation}"
        super().__init__(message)


class ToolInvocationError(ToolError):
    """Raised when a command exits with a non-zero status.

    :ivar argv: Full argument vector that was run.
    :ivar returncode: Exit status.
    :ivar output: Captured stderr (or stdout when stderr was empty).
    """

    def __init__(self, argv: list[str], returncode: int, output: str) -> None:
        self.argv: list[str] = argv
        self.returncode: int = returncode
        self.output: str = output
        message: str = f"{' '.join(argv)} failed (exit={returncode})"
        if output.strip() != "":
            message += f":\n{output.strip()}"
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class ToolOutput:
    """Captured output of a successful tool run.

    :ivar stdout: Decoded standard output.
    :ivar stderr: Decoded standard error.
    """

    stdout: str
    stderr: str


# What to install when a command is missing.
_REMEDIATIONS: dict[str, str] = {
    "ldd": "Install your distribution's libc tools (ldd ships with glibc).",
    "patchelf": "Install patchelf (e.g. 'apt install patchelf' or 'dnf install patchelf') and try again.",
    "otool": "Install the Xcode command line tools with 'xcode-select --install'.",
    "install_name_tool": "Install the Xcode command line tools with 'xcode-select --install'.",
    "codesign": "Install the Xcode command line tools with 'xcode-select --install'.",
    "dumpbin": "Run from a Visual Studio Developer Command Prompt so that dumpbin is on PATH.",
}


def locate_tool(name: str) -> pathlib.Path:
    """Locate a command on ``PATH``.

    :param name: Command name (e.g. ``patchelf``).
    :returns: Absolute path of the command.
    :raises ToolNotFoundError: If the command is not on ``PATH``.
    """

    found: str | None = shutil.which(name)
    if found is None:
        raise ToolNotFoundError(name, _REMEDIATIONS.get(name))
    return pathlib.Path(found)


def run_tool(
    name: str,
    args: list[str],
    *,
    env: dict[str, str] | None = None,
    logger: logging.Logger | None = None,
) -> ToolOutput:
    """Run an external tool and capture its output.

    :param name: Command name, looked up on ``PATH``.
    :param args: Arguments after the command name.
    :param env: Extra environment variables layered over ``os.environ``.
    :param logger: Optional logger for debug output.
    :returns: Captured output.
    :raises ToolNotFoundError: If the command cannot be located.
    :raises ToolInvocationError: If the command exits non-zero.
    """

    executable: pathlib.Path = locate_tool(name)
    argv: list[str] = [str(executable), *args]
    if logger is not None and logger.isEnabledFor(logging.DEBUG) is True:
        logger.debug(f"bundle-relocator: running {' '.join(argv)}")

    full_env: dict[str, str] | None = None
    if env is not None:
        full_env = {**os.environ, **env}

    proc = subprocess.run(
        argv,
        check=False,
        capture_output=True,
        text=True,
        env=full_env,
    )
    if proc.returncode != 0:
        diagnostic: str = proc.stderr if proc.stderr.strip() != "" else proc.stdout
        raise ToolInvocationError(argv, proc.returncode, diagnostic)
    return ToolOutput(stdout=proc.stdout, stderr=proc.stderr)
