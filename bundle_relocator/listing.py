"""Dependency listing.

Thin adapters over the platform introspection commands. Each lister returns the
library references a binary declares, in the order the tool prints them.

The textual output of ``ldd``, ``otool`` and ``dumpbin`` is not a stable
contract, so parsing is line-oriented and tolerant: lines that do not have the
expected shape are skipped instead of failing the whole listing.
"""

from dataclasses import dataclass
import logging
import os
import pathlib
import re

from bundle_relocator.tools import ToolError, run_tool


class UnresolvedLibraryError(ToolError):
    """Raised when a DLL that must be bundled cannot be found on disk."""


@dataclass(frozen=True, slots=True)
class LibraryReference:
    """One edge of the dependency graph.

    :ivar declared: The reference exactly as embedded in the referencing binary.
    :ivar path: Where the reference currently resolves to, or ``None`` if it
        could not be located.
    """

    declared: str
    path: pathlib.Path | None

    @property
    def name(self) -> str:
        """File name part of the declared reference."""

        return self.declared.replace("\\", "/").rsplit("/", 1)[-1]


# libfoo.so.1 => /usr/lib/libfoo.so.1 (0x00007f...)
_LDD_LINE_RE: re.Pattern[str] = re.compile(r"^\s*(?P<name>\S+) => (?P<path>.+?) \((?P<addr>[^)]*)\)\s*$")

# libfoo.so.1 => not found
_LDD_NOT_FOUND_RE: re.Pattern[str] = re.compile(r"^\s*(?P<name>\S+) => not found\s*$")

# \t@rpath/libFoo.dylib (compatibility version 1.0.0, current version 1.2.0)
_OTOOL_LINE_RE: re.Pattern[str] = re.compile(r"^\s+(?P<name>\S.*?) \((?:compatibility|current) version[^)]*\)\s*$")

_DUMPBIN_HEADING: str = "Image has the following dependencies:"


def parse_ldd_output(output: str, *, logger: logging.Logger | None = None) -> list[LibraryReference]:
    """Parse the output of ``ldd``.

    :param output: Raw ``ldd`` stdout.
    :param logger: Optional logger; skipped lines are reported at debug level.
    :returns: Parsed references. Libraries ldd could not locate carry
        ``path=None``.
    """

    refs: list[LibraryReference] = []
    for line in output.splitlines():
        missing = _LDD_NOT_FOUND_RE.match(line)
        if missing is not None:
            refs.append(LibraryReference(declared=missing.group("name"), path=None))
            continue
        m = _LDD_LINE_RE.match(line)
        if m is None:
            if logger is not None and line.strip() != "":
                logger.debug(f"bundle-relocator: skipping ldd line {line.strip()!r}")
            continue
        refs.append(LibraryReference(declared=m.group("name"), path=pathlib.Path(m.group("path"))))
    return refs


def parse_otool_output(output: str, *, own_id: str | None = None) -> list[str]:
    """Parse the output of ``otool -L`` into install names.

    :param output: Raw ``otool -L`` stdout.
    :param own_id: Install id of the inspected binary (see
        :func:`parse_otool_id`). ``otool`` lists a dylib's own id first; when
        given, that entry is dropped.
    :returns: Install names in declaration order.
    """

    names: list[str] = []
    skipped_id: bool = False
    for line in output.splitlines():
        m = _OTOOL_LINE_RE.match(line)
        if m is None:
            continue
        name: str = m.group("name")
        if own_id is not None and skipped_id is False and name == own_id:
            skipped_id = True
            continue
        names.append(name)
    return names


def parse_otool_id(output: str) -> str | None:
    """Parse the output of ``otool -D``.

    :param output: Raw ``otool -D`` stdout: a ``<path>:`` header, followed by
        the install id for dylibs and by nothing for executables.
    :returns: The install id, or ``None``.
    """

    for line in output.splitlines()[1:]:
        if line.strip() != "":
            return line.strip()
    return None


def parse_otool_rpaths(output: str) -> list[str]:
    """Extract ``LC_RPATH`` entries from the output of ``otool -l``.

    :param output: Raw ``otool -l`` stdout.
    :returns: The rpaths, in load command order.
    """

    rpaths: list[str] = []
    in_rpath: bool = False
    for raw in output.splitlines():
        line: str = raw.strip()
        if line.startswith("Load command "):
            in_rpath = False
            continue
        if line == "cmd LC_RPATH":
            in_rpath = True
            continue
        if in_rpath is True and line.startswith("path "):
            # path @loader_path/../lib (offset 12)
            value: str = line[len("path ") :]
            offset_at: int = value.rfind(" (offset ")
            if offset_at != -1:
                value = value[:offset_at]
            rpaths.append(value)
            in_rpath = False
    return rpaths


def parse_dumpbin_output(output: str) -> list[str]:
    """Parse the output of ``dumpbin /DEPENDENTS`` into DLL names.

    The names follow the ``Image has the following dependencies:`` heading,
    after one blank line, and run until the next blank line. Output without
    the heading yields no names.

    :param output: Raw ``dumpbin`` stdout.
    :returns: DLL names.
    """

    lines: list[str] = output.splitlines()
    start: int | None = None
    for i, line in enumerate(lines):
        if line.strip() == _DUMPBIN_HEADING:
            start = i + 1
            break
    if start is None:
        return []

    while start < len(lines) and lines[start].strip() == "":
        start += 1

    names: list[str] = []
    for line in lines[start:]:
        name: str = line.strip()
        if name == "":
            break
        names.append(name)
    return names


class LddLister:
    """Lists ELF dependencies with ``ldd``.

    :param products_dir: Build products directory, exported as
        ``LD_LIBRARY_PATH`` so that libraries built next to the executable
        resolve.
    """

    def __init__(self, products_dir: pathlib.Path | None = None, logger: logging.Logger | None = None) -> None:
        self.products_dir: pathlib.Path | None = products_dir
        self.logger: logging.Logger = logger if logger is not None else logging.getLogger("bundle_relocator")

    def list_dependencies(self, binary: pathlib.Path) -> list[LibraryReference]:
        env: dict[str, str] | None = None
        if self.products_dir is not None:
            env = {"LD_LIBRARY_PATH": str(self.products_dir.resolve())}
        out = run_tool("ldd", [str(binary)], env=env, logger=self.logger)
        return parse_ldd_output(out.stdout, logger=self.logger)


class OtoolLister:
    """Lists Mach-O dependencies with ``otool -L`` and resolves install names.

    :param main_executable: The bundle's main executable; anchors
        ``@executable_path``.
    :param search_dirs: Directories searched for ``@rpath/`` references.
    """

    def __init__(
        self,
        *,
        main_executable: pathlib.Path | None = None,
        search_dirs: list[pathlib.Path] | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.main_executable: pathlib.Path | None = main_executable
        self.search_dirs: list[pathlib.Path] = list(search_dirs) if search_dirs is not None else []
        self.logger: logging.Logger = logger if logger is not None else logging.getLogger("bundle_relocator")

    def list_dependencies(self, binary: pathlib.Path) -> list[LibraryReference]:
        out = run_tool("otool", ["-L", str(binary)], logger=self.logger)
        own_id: str | None = self.install_id(binary)
        refs: list[LibraryReference] = []
        for name in parse_otool_output(out.stdout, own_id=own_id):
            refs.append(LibraryReference(declared=name, path=self.resolve(name, binary=binary)))
        return refs

    def install_id(self, binary: pathlib.Path) -> str | None:
        """Read a binary's install id (``LC_ID_DYLIB``) with ``otool -D``.

        :param binary: Mach-O file.
        :returns: The install id, or ``None`` for executables.
        """

        out = run_tool("otool", ["-D", str(binary)], logger=self.logger)
        return parse_otool_id(out.stdout)

    def resolve(self, install_name: str, *, binary: pathlib.Path) -> pathlib.Path | None:
        """Resolve an install name to a file on disk.

        :param install_name: Install name as declared by ``binary``.
        :param binary: The referencing binary (anchors ``@loader_path``).
        :returns: The library's location, or ``None`` if it cannot be found.
        """

        if install_name.startswith("@loader_path/") is True:
            return binary.parent / install_name[len("@loader_path/") :]
        if install_name.startswith("@executable_path/") is True:
            anchor: pathlib.Path = self.main_executable if self.main_executable is not None else binary
            return anchor.parent / install_name[len("@executable_path/") :]
        if install_name.startswith("@rpath/") is True:
            rel: str = install_name[len("@rpath/") :]
            for d in self.search_dirs:
                candidate: pathlib.Path = d / rel
                if candidate.exists() is True:
                    return candidate
            return None
        if install_name.startswith("@") is True:
            return None
        # OS libraries may only exist in the dyld shared cache.
        path: pathlib.Path = pathlib.Path(install_name)
        if path.exists() is False:
            return None
        return path


class DumpbinLister:
    """Lists PE dependencies with ``dumpbin /DEPENDENTS``.

    DLLs found in the products directory resolve there. Other DLLs only
    resolve (through ``PATH``) when they are on ``allow_list``; everything
    else is a system DLL and yields ``path=None``.

    :param products_dir: Build products directory.
    :param allow_list: Lower-case DLL base names that may be bundled.
    """

    def __init__(
        self,
        *,
        products_dir: pathlib.Path | None,
        allow_list: frozenset[str],
        logger: logging.Logger | None = None,
    ) -> None:
        self.products_dir: pathlib.Path | None = products_dir
        self.allow_list: frozenset[str] = allow_list
        self.logger: logging.Logger = logger if logger is not None else logging.getLogger("bundle_relocator")

    def list_dependencies(self, binary: pathlib.Path) -> list[LibraryReference]:
        out = run_tool("dumpbin", ["/DEPENDENTS", str(binary)], logger=self.logger)
        refs: list[LibraryReference] = []
        for name in parse_dumpbin_output(out.stdout):
            refs.append(LibraryReference(declared=name, path=self.resolve(name)))
        return refs

    def resolve(self, dll_name: str) -> pathlib.Path | None:
        """Resolve a DLL name.

        :param dll_name: DLL file name as listed by ``dumpbin``.
        :returns: The DLL's location, or ``None`` for system DLLs.
        :raises UnresolvedLibraryError: If an allow-listed DLL is not on ``PATH``.
        """

        if self.products_dir is not None:
            guess: pathlib.Path = self.products_dir / dll_name
            if guess.exists() is True:
                return guess

        base: str = dll_name.split(".")[0].lower()
        if base not in self.allow_list:
            return None

        for entry in os.environ.get("PATH", "").split(os.pathsep):
            if entry == "":
                continue
            candidate: pathlib.Path = pathlib.Path(entry) / dll_name
            if candidate.exists() is True:
                return candidate

        raise UnresolvedLibraryError(f"Failed to locate {dll_name!r} in any PATH directory.")
