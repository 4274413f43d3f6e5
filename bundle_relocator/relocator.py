"""Dynamic library relocation.

The engine walks the dependency graph of a binary, copies every library the
toolchain's policy selects into one flat library directory, and rewrites the
references of every binary it touches so that they resolve relative to the
referencing binary's own directory. The bundle therefore keeps working after
being moved as a whole.

Libraries are identified by their real path (all symlinks resolved): the same
file is often reachable through several names (``libfoo.so.1`` ->
``libfoo.so.1.2.3``, ``@rpath/`` vs. absolute install names). A run keeps a
visited map keyed by real path, which makes every library get copied once and
makes the walk terminate on cyclic graphs.
"""

from dataclasses import dataclass
import filecmp
import logging
import os
import pathlib
import shutil
import stat

from bundle_relocator.listing import LibraryReference
from bundle_relocator.platforms import Toolchain


class RelocationError(RuntimeError):
    """Base class for relocation failures detected by the engine."""


class UnrelatablePathError(RelocationError):
    """Raised when a bundled path cannot be expressed relative to its referencer."""


class LibraryCopyError(RelocationError):
    """Raised when a library (or one of its companion files) cannot be copied into the bundle."""


class LibraryNameCollisionError(RelocationError):
    """Raised when two distinct libraries would be bundled under one file name.

    :ivar name: The contested file name.
    :ivar first: Real path that claimed the name first.
    :ivar second: Real path that tried to claim it afterwards.
    """

    def __init__(self, name: str, first: pathlib.Path, second: pathlib.Path) -> None:
        self.name: str = name
        self.first: pathlib.Path = first
        self.second: pathlib.Path = second
        super().__init__(
            f"Cannot bundle both '{first}' and '{second}': they would both be copied to {name!r}."
        )


@dataclass(frozen=True, slots=True)
class RelocatableLibrary:
    """A library selected for bundling.

    :ivar declared: Reference string through which it was first discovered.
    :ivar real_path: Real path of the original file (its identity).
    :ivar bundled_path: Location of the copy inside the library directory.
    """

    declared: str
    real_path: pathlib.Path
    bundled_path: pathlib.Path


@dataclass(frozen=True, slots=True)
class RelocationResult:
    """Outcome of one relocation run.

    :ivar binary: The top-level binary.
    :ivar library_dir: The library directory libraries were copied into.
    :ivar libraries: Bundled libraries, in discovery order.
    :ivar patched: Binaries whose metadata was rewritten.
    :ivar signed: Binaries that were re-signed.
    """

    binary: pathlib.Path
    library_dir: pathlib.Path
    libraries: tuple[RelocatableLibrary, ...]
    patched: tuple[pathlib.Path, ...]
    signed: tuple[pathlib.Path, ...]


class RelocationRun:
    """State of a single relocation run.

    Owns the visited map (real path -> :class:`RelocatableLibrary`), dropped
    with the run, and the name index (bundled name -> real path) used to
    detect collisions. Runs that copy into the same library directory share
    one name index.
    """

    def __init__(
        self,
        *,
        toolchain: Toolchain,
        library_dir: pathlib.Path,
        bundle_root: pathlib.Path | None,
        logger: logging.Logger,
        names: dict[str, pathlib.Path] | None = None,
    ) -> None:
        self.toolchain: Toolchain = toolchain
        self.library_dir: pathlib.Path = library_dir
        self.bundle_root: pathlib.Path | None = bundle_root
        self.logger: logging.Logger = logger
        self.visited: dict[pathlib.Path, RelocatableLibrary] = {}
        self.names: dict[str, pathlib.Path] = names if names is not None else {}
        self.libraries: list[RelocatableLibrary] = []
        self.patched: list[pathlib.Path] = []
        self.signed: list[pathlib.Path] = []

    def run(self, binary: pathlib.Path, search_scope: pathlib.Path) -> RelocationResult:
        """Relocate the dependencies of ``binary``.

        :param binary: Top-level binary, already at its final location.
        :param search_scope: Directory the binary's references are made
            relative to (the binary's own directory).
        :returns: Summary of the run.
        """

        self.library_dir.mkdir(parents=True, exist_ok=True)

        # The top-level binary counts as visited so that a library referring
        # back to it does not drag a second copy into the bundle.
        top_real: pathlib.Path = pathlib.Path(os.path.realpath(binary))
        self.visited[top_real] = RelocatableLibrary(declared=binary.name, real_path=top_real, bundled_path=binary)
        if _same_dir(binary.parent, self.library_dir) is True:
            self.names[binary.name] = top_real

        stack: list[tuple[pathlib.Path, pathlib.Path, bool]] = [(binary, search_scope, True)]
        while len(stack) > 0:
            current, scope, is_top = stack.pop()
            discovered: list[RelocatableLibrary] = self._process(current, scope=scope, is_top=is_top)
            # Reverse so that libraries are processed in declaration order.
            for lib in reversed(discovered):
                stack.append((lib.bundled_path, self.library_dir, False))

        return RelocationResult(
            binary=binary,
            library_dir=self.library_dir,
            libraries=tuple(self.libraries),
            patched=tuple(self.patched),
            signed=tuple(self.signed),
        )

    def _process(self, binary: pathlib.Path, *, scope: pathlib.Path, is_top: bool) -> list[RelocatableLibrary]:
        """Relocate the direct dependencies of one binary and finalize it.

        :param binary: Binary to process.
        :param scope: Directory its references are made relative to.
        :param is_top: Whether this is the top-level binary of the run.
        :returns: Libraries copied for the first time (still to be processed).
        """

        toolchain: Toolchain = self.toolchain
        discovered: list[RelocatableLibrary] = []
        mutated: bool = False

        refs: list[LibraryReference] = toolchain.lister.list_dependencies(binary)
        for ref in refs:
            if toolchain.policy.is_eligible(ref) is False:
                self.logger.debug(f"bundle-relocator: leaving {ref.declared!r} of {binary.name} to the system")
                continue
            if ref.path is None:
                self.logger.warning(f"bundle-relocator: failed to locate library {ref.declared!r} of {binary.name}")
                continue

            real: pathlib.Path = pathlib.Path(os.path.realpath(ref.path))
            lib: RelocatableLibrary | None = self.visited.get(real)
            if lib is None:
                lib = self._adopt(ref, real)
                discovered.append(lib)

            new_ref: str = toolchain.format_reference(self._relative(lib.bundled_path, scope))
            if toolchain.patcher.change_reference(binary, ref.declared, new_ref) is True:
                self.logger.debug(f"bundle-relocator: {binary.name}: {ref.declared} -> {new_ref}")
                mutated = True

        if is_top is True or toolchain.patch_library_search_paths is True:
            search_path: str = toolchain.format_search_path(self._relative(self.library_dir, binary.parent))
            if toolchain.patcher.set_search_path(binary, search_path) is True:
                self.logger.debug(f"bundle-relocator: {binary.name}: search path -> {search_path}")
                mutated = True

        if mutated is True:
            self.patched.append(binary)
            toolchain.signer.sign(binary)
            self.signed.append(binary)

        return discovered

    def _adopt(self, ref: LibraryReference, real: pathlib.Path) -> RelocatableLibrary:
        """Claim a bundled name for a newly seen library and copy it in.

        The library is marked visited before anything else happens to it.

        :param ref: Reference through which the library was found.
        :param real: Its real path.
        :returns: The new :class:`RelocatableLibrary`.
        :raises LibraryNameCollisionError: If the name belongs to another file.
        """

        name: str = self.toolchain.bundled_name(ref)
        owner: pathlib.Path | None = self.names.get(name)
        if owner is not None and owner != real:
            raise LibraryNameCollisionError(name, owner, real)

        destination: pathlib.Path = self.library_dir / name
        lib = RelocatableLibrary(declared=ref.declared, real_path=real, bundled_path=destination)
        self.names[name] = real
        self.visited[real] = lib
        self.libraries.append(lib)

        self._copy(real, destination)
        for suffix in self.toolchain.companion_suffixes:
            companion: pathlib.Path = real.with_suffix(suffix)
            if companion.is_file() is True:
                self._copy(companion, destination.with_suffix(suffix))
        return lib

    def _copy(self, source: pathlib.Path, destination: pathlib.Path) -> None:
        """Copy a file unless the destination already holds the same bytes.

        :param source: Real file to copy.
        :param destination: Target path.
        :raises LibraryCopyError: If the copy fails.
        """

        if destination.is_symlink() is True:
            destination.unlink()
        elif os.path.realpath(destination) == str(source):
            # Already bundled (e.g. a re-run resolving into the bundle).
            return
        elif destination.is_file() is True and filecmp.cmp(source, destination, shallow=False) is True:
            return

        self.logger.debug(f"bundle-relocator: copying {source} -> {destination}")
        try:
            shutil.copy2(source, destination)
            mode: int = destination.stat().st_mode
            if mode & stat.S_IWUSR == 0:
                destination.chmod(mode | stat.S_IWUSR)
        except OSError as e:
            raise LibraryCopyError(f"Failed to copy '{source}' to '{destination}': {e}") from e

    def _relative(self, target: pathlib.Path, start: pathlib.Path) -> str:
        """Express ``target`` relative to the directory ``start``.

        :param target: Path inside the bundle.
        :param start: Directory of the consuming binary.
        :returns: POSIX-style relative path.
        :raises UnrelatablePathError: If no relative path exists, or it would
            leave the bundle root.
        """

        target_abs: str = os.path.abspath(target)
        start_abs: str = os.path.abspath(start)
        if self.bundle_root is not None:
            root_abs: pathlib.Path = pathlib.Path(os.path.abspath(self.bundle_root))
            for p in (target_abs, start_abs):
                if pathlib.Path(p).is_relative_to(root_abs) is False:
                    raise UnrelatablePathError(
                        f"'{p}' lies outside the bundle root '{root_abs}'; "
                        f"cannot reference '{target_abs}' relative to '{start_abs}'."
                    )

        try:
            rel: str = os.path.relpath(target_abs, start_abs)
        except ValueError as e:
            raise UnrelatablePathError(f"Cannot express '{target_abs}' relative to '{start_abs}'.") from e
        return rel.replace(os.sep, "/")


def _same_dir(a: pathlib.Path, b: pathlib.Path) -> bool:
    return os.path.abspath(a) == os.path.abspath(b)


class Relocator:
    """Makes binaries self-contained using one platform toolchain.

    :param toolchain: Toolchain selected for the target platform.
    :param logger: Optional logger.
    """

    def __init__(self, toolchain: Toolchain, logger: logging.Logger | None = None) -> None:
        self.toolchain: Toolchain = toolchain
        self.logger: logging.Logger = logger if logger is not None else logging.getLogger("bundle_relocator")

    def relocate(
        self,
        binary: pathlib.Path,
        library_dir: pathlib.Path,
        search_scope: pathlib.Path | None = None,
        *,
        bundle_root: pathlib.Path | None = None,
        names: dict[str, pathlib.Path] | None = None,
    ) -> RelocationResult:
        """Copy the libraries ``binary`` needs into ``library_dir`` and rewrite references.

        :param binary: The binary to make self-contained, at its final location.
        :param library_dir: Destination for relocated libraries.
        :param search_scope: Directory that ``binary``'s references are made
            relative to. Defaults to the binary's own directory.
        :param bundle_root: When given, every embedded relative path must stay
            inside this directory.
        :param names: Bundled-name index shared with other runs into the
            same ``library_dir``; updated in place.
        :returns: Summary of the run.
        :raises RelocationError: On unrelatable paths, name collisions or
            copy failures.
        :raises ToolError: If an external tool is missing or fails.
        """

        scope: pathlib.Path = search_scope if search_scope is not None else binary.parent
        self.logger.info(f"bundle-relocator: relocating dynamic libraries of {binary.name} ({self.toolchain.name})")

        run = RelocationRun(
            toolchain=self.toolchain,
            library_dir=library_dir,
            bundle_root=bundle_root,
            logger=self.logger,
            names=names,
        )
        result: RelocationResult = run.run(binary, scope)

        self.logger.info(
            f"bundle-relocator: bundled {len(result.libraries)} libraries, "
            f"patched {len(result.patched)} binaries"
        )
        return result
