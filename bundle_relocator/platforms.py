"""Per-platform relocation toolchains.

A toolchain is the small capability set the relocation engine needs: list a
binary's references, decide which ones to bundle, rewrite metadata, re-sign,
and the platform's conventions for naming bundled files and spelling relative
references. One toolchain is selected per bundling operation.
"""

import logging
import pathlib
from typing import Protocol

from bundle_relocator.listing import DumpbinLister, LddLister, LibraryReference, OtoolLister
from bundle_relocator.patcher import CodesignSigner, InstallNameToolPatcher, NullPatcher, NullSigner, PatchElfPatcher
from bundle_relocator.policy import (
    LINUX_ALLOW_LIST,
    WINDOWS_ALLOW_LIST,
    AllowListPolicy,
    SystemExclusionPolicy,
)
from bundle_relocator.target import LINUX, WINDOWS, TargetConfig, TargetResolutionError


class DependencyLister(Protocol):
    def list_dependencies(self, binary: pathlib.Path) -> list[LibraryReference]: ...


class RelocationPolicy(Protocol):
    def is_eligible(self, ref: LibraryReference) -> bool: ...


class MetadataPatcher(Protocol):
    def change_reference(self, binary: pathlib.Path, old: str, new: str) -> bool: ...

    def set_search_path(self, binary: pathlib.Path, value: str) -> bool: ...


class Signer(Protocol):
    def sign(self, binary: pathlib.Path) -> None: ...


class Toolchain:
    """Base toolchain. Subclasses provide the platform conventions.

    :ivar lister: Dependency lister.
    :ivar policy: Relocation policy.
    :ivar patcher: Metadata patcher.
    :ivar signer: Signer applied to mutated binaries.
    :ivar patch_library_search_paths: Whether copied libraries also get their
        default search path set (to their own directory).
    :ivar companion_suffixes: Suffixes of side files copied along with a
        library (e.g. ``.pdb`` debug info).
    """

    name: str = "generic"
    patch_library_search_paths: bool = False
    companion_suffixes: tuple[str, ...] = ()

    def __init__(
        self,
        *,
        lister: DependencyLister,
        policy: RelocationPolicy,
        patcher: MetadataPatcher,
        signer: Signer,
    ) -> None:
        self.lister: DependencyLister = lister
        self.policy: RelocationPolicy = policy
        self.patcher: MetadataPatcher = patcher
        self.signer: Signer = signer

    def bundled_name(self, ref: LibraryReference) -> str:
        """File name a referenced library gets inside the library directory."""

        return ref.name

    def format_reference(self, relpath: str) -> str:
        """Spell a reference to a bundled library.

        :param relpath: POSIX path of the library relative to the referencing
            binary's directory.
        :returns: The string to embed in the referencing binary.
        """

        return pathlib.PurePosixPath(relpath).name

    def format_search_path(self, relpath: str) -> str:
        """Spell a default search path.

        :param relpath: POSIX path of the library directory relative to the
            binary's directory (``.`` when they coincide).
        :returns: The value to store in the binary.
        """

        return relpath


class LinuxToolchain(Toolchain):
    """ELF toolchain: ``ldd`` + allow-list + ``patchelf``.

    ``DT_NEEDED`` entries keep naming the library by file name; the runpath
    (``$ORIGIN``-relative) is what points the loader into the bundle.
    """

    name = "linux"
    patch_library_search_paths = True

    def format_search_path(self, relpath: str) -> str:
        if relpath == ".":
            return "$ORIGIN"
        return f"$ORIGIN/{relpath}"


class DarwinToolchain(Toolchain):
    """Mach-O toolchain: ``otool`` + system exclusion + ``install_name_tool`` + ``codesign``."""

    name = "darwin"

    def bundled_name(self, ref: LibraryReference) -> str:
        # Framework binaries have no extension; give them one so that every
        # bundled library can be found (and signed) by suffix.
        name: str = ref.name
        if pathlib.PurePosixPath(name).suffix == "":
            name = f"{name}.dylib"
        return name

    def format_reference(self, relpath: str) -> str:
        return f"@loader_path/{relpath}"

    def format_search_path(self, relpath: str) -> str:
        if relpath == ".":
            return "@executable_path"
        return f"@executable_path/{relpath}"


class WindowsToolchain(Toolchain):
    """PE toolchain: ``dumpbin`` + allow-list. DLLs are found next to the executable."""

    name = "windows"
    companion_suffixes = (".pdb",)


def toolchain_for(
    target: TargetConfig,
    *,
    main_executable: pathlib.Path,
    products_dir: pathlib.Path | None = None,
    standalone: bool = False,
    logger: logging.Logger | None = None,
) -> Toolchain:
    """Select and assemble the toolchain for a target platform.

    :param target: Resolved target.
    :param main_executable: The bundle's main executable (final location).
    :param products_dir: Build products directory, used to resolve libraries
        built alongside the app.
    :param standalone: Darwin only: bundle OS-owned libraries too.
    :param logger: Optional logger.
    :returns: The toolchain.
    :raises TargetResolutionError: If no toolchain exists for the platform.
    """

    if target.platform == LINUX:
        return LinuxToolchain(
            lister=LddLister(products_dir, logger=logger),
            policy=AllowListPolicy(LINUX_ALLOW_LIST, products_dir=products_dir),
            patcher=PatchElfPatcher(logger=logger),
            signer=NullSigner(),
        )

    if target.is_darwin is True:
        search_dirs: list[pathlib.Path] = []
        if products_dir is not None:
            search_dirs = [products_dir, products_dir / "PackageFrameworks"]
        return DarwinToolchain(
            lister=OtoolLister(main_executable=main_executable, search_dirs=search_dirs, logger=logger),
            policy=SystemExclusionPolicy(standalone=standalone),
            patcher=InstallNameToolPatcher(logger=logger),
            signer=CodesignSigner(logger=logger),
        )

    if target.platform == WINDOWS:
        return WindowsToolchain(
            lister=DumpbinLister(products_dir=products_dir, allow_list=WINDOWS_ALLOW_LIST, logger=logger),
            policy=AllowListPolicy(WINDOWS_ALLOW_LIST, products_dir=products_dir, case_sensitive=False),
            patcher=NullPatcher(),
            signer=NullSigner(),
        )

    raise TargetResolutionError(f"No relocation toolchain for platform {target.platform!r}.")
