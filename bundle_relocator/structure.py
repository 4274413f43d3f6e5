"""Bundle directory layouts.

A :class:`BundleStructure` only describes paths; nothing is created on disk
until :meth:`BundleStructure.create_directories` is called.
"""

from dataclasses import dataclass
import pathlib

from bundle_relocator.target import LINUX, MACOS, WINDOWS, TargetConfig, TargetResolutionError


@dataclass(frozen=True, slots=True)
class BundleStructure:
    """The on-disk layout of an app bundle.

    :ivar root: Bundle root directory.
    :ivar executable_dir: Holds the main executable (and executable dependents).
    :ivar library_dir: Holds relocated dynamic libraries, flat.
    :ivar resources_dir: Holds resources; opaque to the relocation engine.
    :ivar main_executable: Final location of the main executable.
    """

    root: pathlib.Path
    executable_dir: pathlib.Path
    library_dir: pathlib.Path
    resources_dir: pathlib.Path
    main_executable: pathlib.Path

    @property
    def directories(self) -> list[pathlib.Path]:
        """Every directory of the layout, parents first, without duplicates."""

        out: list[pathlib.Path] = []
        for d in (self.root, self.executable_dir, self.library_dir, self.resources_dir):
            if d not in out:
                out.append(d)
        return out

    def create_directories(self) -> None:
        """Create all directories of the layout. Existing ones are left alone."""

        for d in self.directories:
            d.mkdir(parents=True, exist_ok=True)


def linux_bundle_structure(output_dir: pathlib.Path, app_name: str) -> BundleStructure:
    """Layout of a generic Linux bundle (``<app>.generic/usr/{bin,lib}``).

    Resources live next to the executable, where build systems expect to find
    resource bundles at run time.
    """

    root: pathlib.Path = output_dir / f"{app_name}.generic"
    bin_dir: pathlib.Path = root / "usr" / "bin"
    return BundleStructure(
        root=root,
        executable_dir=bin_dir,
        library_dir=root / "usr" / "lib",
        resources_dir=bin_dir,
        main_executable=bin_dir / app_name,
    )


def darwin_bundle_structure(output_dir: pathlib.Path, app_name: str, *, platform: str) -> BundleStructure:
    """Layout of an ``.app`` bundle.

    macOS bundles nest everything under ``Contents/``; iOS, tvOS and visionOS
    bundles are flat.
    """

    root: pathlib.Path = output_dir / f"{app_name}.app"
    contents: pathlib.Path
    executable_dir: pathlib.Path
    resources_dir: pathlib.Path
    if platform == MACOS:
        contents = root / "Contents"
        executable_dir = contents / "MacOS"
        resources_dir = contents / "Resources"
    else:
        contents = root
        executable_dir = root
        resources_dir = root

    return BundleStructure(
        root=root,
        executable_dir=executable_dir,
        library_dir=contents / "Libraries",
        resources_dir=resources_dir,
        main_executable=executable_dir / app_name,
    )


def windows_bundle_structure(output_dir: pathlib.Path, app_name: str) -> BundleStructure:
    """Layout of a generic Windows bundle.

    DLLs must sit next to the executable for the loader to find them, so the
    executable and library directories coincide.
    """

    root: pathlib.Path = output_dir / f"{app_name}.generic"
    return BundleStructure(
        root=root,
        executable_dir=root,
        library_dir=root,
        resources_dir=root,
        main_executable=root / f"{app_name}.exe",
    )


def bundle_structure_for(target: TargetConfig, output_dir: pathlib.Path, app_name: str) -> BundleStructure:
    """Compute the layout for a target platform.

    :param target: Resolved target.
    :param output_dir: Directory the bundle is created in.
    :param app_name: App name (also the executable name).
    :returns: The layout.
    :raises TargetResolutionError: If the platform has no known layout.
    """

    if target.platform == LINUX:
        return linux_bundle_structure(output_dir, app_name)
    if target.is_darwin is True:
        return darwin_bundle_structure(output_dir, app_name, platform=target.platform)
    if target.platform == WINDOWS:
        return windows_bundle_structure(output_dir, app_name)
    raise TargetResolutionError(f"No bundle layout for platform {target.platform!r}.")
