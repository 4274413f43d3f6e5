"""Bundle builder.

This module composes the pieces into one bundling operation:

- It computes the target's bundle layout and creates its directories.
- It copies the built executable, any executable dependents and the resource
  bundles found in the build products directory into the layout.
- It runs the relocation engine over every executable so that the bundle
  carries the dynamic libraries it needs and can be moved anywhere.
"""

from dataclasses import dataclass
import logging
import pathlib
import shutil
import time

from bundle_relocator.platforms import Toolchain, toolchain_for
from bundle_relocator.relocator import RelocationResult, Relocator
from bundle_relocator.structure import BundleStructure, bundle_structure_for
from bundle_relocator.target import WINDOWS, TargetConfig


class BuildError(RuntimeError):
    """Raised when bundling fails outside of the relocation engine."""


# swift-windowsappsdk looks for its bootstrap DLL where SwiftPM put it.
WINDOWS_KEPT_RESOURCE_BUNDLES: frozenset[str] = frozenset({"swift-windowsappsdk_CWinAppSDK"})


@dataclass(frozen=True, slots=True)
class CopyStats:
    """Stats collected while copying resource bundles.

    :ivar bundles_copied: Number of resource bundles copied.
    :ivar files_copied: Number of files copied.
    """

    bundles_copied: int
    files_copied: int


@dataclass(frozen=True, slots=True)
class BundleResult:
    """Outcome of a bundling operation.

    :ivar structure: The bundle's layout.
    :ivar relocations: One relocation result per executable, main executable first.
    """

    structure: BundleStructure
    relocations: tuple[RelocationResult, ...]


def build_bundle(
    *,
    executable: pathlib.Path,
    output_dir: pathlib.Path,
    target: TargetConfig,
    app_name: str | None = None,
    products_dir: pathlib.Path | None = None,
    executable_dependencies: list[pathlib.Path] | None = None,
    standalone: bool = False,
    confine_to_bundle: bool = True,
    logger: logging.Logger | None = None,
    toolchain: Toolchain | None = None,
) -> BundleResult:
    """Build a self-contained app bundle.

    :param executable: The built main executable.
    :param output_dir: Directory to create the bundle in.
    :param target: Target platform.
    :param app_name: App name; defaults to the executable's stem.
    :param products_dir: Build products directory. Defaults to the
        executable's directory.
    :param executable_dependencies: Extra executables to ship next to the main one.
    :param standalone: Darwin only: also bundle OS-owned libraries.
    :param confine_to_bundle: Refuse references that leave the bundle root.
    :param logger: Optional logger for progress output.
    :param toolchain: Toolchain override (defaults to the target's).
    :returns: The bundle layout and relocation results.
    :raises BuildError: If inputs are missing or files cannot be copied.
    :raises RelocationError: If relocation fails.
    :raises ToolError: If an external tool is missing or fails.
    """

    if logger is None:
        logger = logging.getLogger("bundle_relocator")

    if executable.is_file() is False:
        raise BuildError(f"Executable does not exist: {executable}")
    if products_dir is None:
        products_dir = executable.parent
    if products_dir.is_dir() is False:
        raise BuildError(f"Products directory does not exist: {products_dir}")

    extra: list[pathlib.Path] = list(executable_dependencies) if executable_dependencies is not None else []
    for dep in extra:
        if dep.is_file() is False:
            raise BuildError(f"Executable dependency does not exist: {dep}")

    name: str = app_name if app_name is not None else executable.stem
    structure: BundleStructure = bundle_structure_for(target, output_dir, name)

    t_total0: float = time.perf_counter()
    logger.info(f"bundle-relocator: bundling '{structure.root.name}' for {target.platform} ({target.arch})")
    logger.info(f"bundle-relocator: executable={executable}")
    logger.info(f"bundle-relocator: products_dir={products_dir}")

    try:
        structure.create_directories()
    except OSError as e:
        raise BuildError(f"Failed to create bundle directory structure at {structure.root}") from e

    _copy_executable(src=executable, dst=structure.main_executable, with_pdb=target.platform == WINDOWS, logger=logger)
    copied_deps: list[pathlib.Path] = []
    for dep in extra:
        dst: pathlib.Path = structure.executable_dir / dep.name
        _copy_executable(src=dep, dst=dst, with_pdb=target.platform == WINDOWS, logger=logger)
        copied_deps.append(dst)

    keep_suffix: frozenset[str] = WINDOWS_KEPT_RESOURCE_BUNDLES if target.platform == WINDOWS else frozenset()
    stats: CopyStats = _copy_resource_bundles(
        src=products_dir, dst=structure.resources_dir, keep_suffix=keep_suffix, logger=logger
    )
    if stats.bundles_copied > 0:
        logger.info(
            f"bundle-relocator: copied {stats.bundles_copied} resource bundles ({stats.files_copied} files)"
        )

    if toolchain is None:
        toolchain = toolchain_for(
            target,
            main_executable=structure.main_executable,
            products_dir=products_dir,
            standalone=standalone,
            logger=logger,
        )
    relocator = Relocator(toolchain, logger=logger)
    bundle_root: pathlib.Path | None = structure.root if confine_to_bundle is True else None

    t_reloc0: float = time.perf_counter()
    relocations: list[RelocationResult] = []
    # Every executable copies into the same library directory, so bundled
    # names are claimed once for the whole bundle.
    names: dict[str, pathlib.Path] = {}
    for binary in [structure.main_executable, *copied_deps]:
        relocations.append(
            relocator.relocate(binary, structure.library_dir, bundle_root=bundle_root, names=names)
        )
    t_reloc1: float = time.perf_counter()
    logger.info(f"bundle-relocator: relocated dynamic libraries in {t_reloc1 - t_reloc0:.2f}s")

    t_total1: float = time.perf_counter()
    logger.info(f"bundle-relocator: wrote {structure.root} in {t_total1 - t_total0:.2f}s")
    return BundleResult(structure=structure, relocations=tuple(relocations))


def _copy_executable(*, src: pathlib.Path, dst: pathlib.Path, with_pdb: bool, logger: logging.Logger) -> None:
    """Copy an executable into the bundle, with its ``.pdb`` when asked.

    :param src: Built executable.
    :param dst: Final location in the bundle (the file, not the directory).
    :param with_pdb: Also copy a sibling ``.pdb`` debug info file if present.
    :param logger: Logger for progress output.
    :raises BuildError: If the copy fails.
    """

    logger.info(f"bundle-relocator: copying executable {src.name}")
    try:
        shutil.copy2(src, dst)
        if with_pdb is True:
            pdb: pathlib.Path = src.with_suffix(".pdb")
            if pdb.is_file() is True:
                shutil.copy2(pdb, dst.with_suffix(".pdb"))
    except OSError as e:
        raise BuildError(f"Failed to copy executable from {src} to {dst}") from e


def _copy_resource_bundles(
    *,
    src: pathlib.Path,
    dst: pathlib.Path,
    keep_suffix: frozenset[str] = frozenset(),
    logger: logging.Logger,
) -> CopyStats:
    """Copy ``*.resources`` directories produced by the build as ``*.bundle``.

    :param src: Build products directory.
    :param dst: Bundle resources directory.
    :param keep_suffix: Bundle names (without suffix) copied under their
        original ``.resources`` name.
    :param logger: Logger for progress output.
    :returns: Copy statistics.
    :raises BuildError: If a bundle cannot be copied.
    """

    bundles_copied: int = 0
    files_copied: int = 0
    for bundle in sorted(src.iterdir()):
        if bundle.suffix != ".resources" or bundle.is_dir() is False:
            continue

        suffix: str = ".resources" if bundle.stem in keep_suffix else ".bundle"
        target_path: pathlib.Path = dst / f"{bundle.stem}{suffix}"
        logger.info(f"bundle-relocator: copying resource bundle {bundle.name}")
        try:
            shutil.copytree(bundle, target_path, dirs_exist_ok=True)
        except OSError as e:
            raise BuildError(f"Failed to copy resource bundle {bundle} to {target_path}") from e

        bundles_copied += 1
        for p in bundle.rglob("*"):
            if p.is_file() is True:
                files_copied += 1

    return CopyStats(bundles_copied=bundles_copied, files_copied=files_copied)
