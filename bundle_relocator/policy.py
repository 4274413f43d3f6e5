"""Relocation policies.

A policy decides, for one discovered reference, whether the library it names
travels inside the bundle. The Linux and Windows bundlers only ever bundle the
language runtime (and libraries built alongside the app): many third-party
libraries, Gtk being the usual example, break when moved to another machine.
Everything else is left for the host's loader to resolve.

Darwin uses the opposite approach and bundles anything that is not owned by
the OS.
"""

import pathlib

from bundle_relocator.listing import LibraryReference


# Runtime libraries bundled on Linux, by base name. libc is intentionally
# absent: it has to match the host's loader.
LINUX_ALLOW_LIST: frozenset[str] = frozenset(
    {
        "libswiftCore",
        "libswiftGlibc",
        "libswiftDispatch",
        "libswiftDistributed",
        "libswiftObservation",
        "libswiftRegexBuilder",
        "libswiftRemoteMirror",
        "libswiftSynchronization",
        "libswiftSwiftOnoneSupport",
        "libBlocksRuntime",
        "libdispatch",
        "libswift_Volatile",
        "libswift_Concurrency",
        "libswift_RegexParser",
        "libswift_StringProcessing",
        "libswift_Backtracing",
        "libswift_Builtin_float",
        "libswift_Differentiation",
        "lib_FoundationICU",
        "lib_InternalSwiftScan",
        "lib_InternalSwiftStaticMirror",
        "libFoundation",
        "libFoundationXML",
        "libFoundationEssentials",
        "libFoundationNetworking",
        "libFoundationInternationalization",
        "libicuuc",
        "libicudata",
        "libicuucswift",
        "libicui18nswift",
        "libicudataswift",
    }
)

# Runtime DLLs bundled on Windows, lower-cased base names.
WINDOWS_ALLOW_LIST: frozenset[str] = frozenset(
    name.lower()
    for name in (
        "swiftCore",
        "swiftCRT",
        "swiftDispatch",
        "swiftDistributed",
        "swiftObservation",
        "swiftRegexBuilder",
        "swiftRemoteMirror",
        "swiftSwiftOnoneSupport",
        "swiftSynchronization",
        "swiftWinSDK",
        "Foundation",
        "FoundationXML",
        "FoundationNetworking",
        "FoundationEssentials",
        "FoundationInternationalization",
        "BlocksRuntime",
        "_FoundationICU",
        "_InternalSwiftScan",
        "_InternalSwiftStaticMirror",
        "swift_Concurrency",
        "swift_RegexParser",
        "swift_StringProcessing",
        "swift_Differentiation",
        "concrt140",
        "msvcp140",
        "msvcp140_1",
        "msvcp140_2",
        "msvcp140_atomic_wait",
        "msvcp140_codecvt_ids",
        "vccorlib140",
        "vcruntime140",
        "vcruntime140_1",
        "vcruntime140_threads",
        "dispatch",
    )
)

DARWIN_SYSTEM_PREFIXES: tuple[str, ...] = ("/usr/lib/", "/System/Library/")

# References that already point inside a bundle.
DARWIN_BUNDLE_MARKERS: tuple[str, ...] = ("@loader_path/", "@executable_path/")

# The back-deployed concurrency runtime must keep resolving through the rpath
# so that the OS copy wins where one exists.
DARWIN_IGNORED_INSTALL_NAMES: frozenset[str] = frozenset({"@rpath/libswift_Concurrency.dylib"})


def base_library_name(name: str) -> str:
    """Strip version and extension suffixes from a library file name.

    ``libswiftCore.so.5.9`` becomes ``libswiftCore``.

    :param name: Library file name.
    :returns: Base name.
    """

    return name.split(".")[0]


def _is_within(path: pathlib.Path, directory: pathlib.Path) -> bool:
    return pathlib.Path(path).resolve().is_relative_to(directory.resolve())


class AllowListPolicy:
    """Bundles only allow-listed libraries and build products.

    :param allow_list: Base names that may be bundled.
    :param products_dir: Build products directory; libraries whose real path
        lies inside it are always bundled.
    :param case_sensitive: ``False`` on Windows, where DLL names are
        compared lower-cased.
    """

    def __init__(
        self,
        allow_list: frozenset[str],
        *,
        products_dir: pathlib.Path | None = None,
        case_sensitive: bool = True,
    ) -> None:
        self.allow_list: frozenset[str] = allow_list
        self.products_dir: pathlib.Path | None = products_dir
        self.case_sensitive: bool = case_sensitive

    def is_eligible(self, ref: LibraryReference) -> bool:
        base: str = base_library_name(ref.name)
        if self.case_sensitive is False:
            base = base.lower()
        if base in self.allow_list:
            return True
        if self.products_dir is not None and ref.path is not None:
            return _is_within(ref.path, self.products_dir)
        return False


class SystemExclusionPolicy:
    """Bundles everything that is not OS-owned and not already bundled.

    :param system_prefixes: Declared-path prefixes owned by the OS.
    :param standalone: Ignore ``system_prefixes`` and bundle every reference
        that is not already bundle-internal.
    """

    def __init__(
        self,
        *,
        system_prefixes: tuple[str, ...] = DARWIN_SYSTEM_PREFIXES,
        bundle_markers: tuple[str, ...] = DARWIN_BUNDLE_MARKERS,
        ignored: frozenset[str] = DARWIN_IGNORED_INSTALL_NAMES,
        standalone: bool = False,
    ) -> None:
        self.system_prefixes: tuple[str, ...] = system_prefixes
        self.bundle_markers: tuple[str, ...] = bundle_markers
        self.ignored: frozenset[str] = ignored
        self.standalone: bool = standalone

    def is_eligible(self, ref: LibraryReference) -> bool:
        if ref.declared.startswith(self.bundle_markers) is True:
            return False
        if ref.declared in self.ignored:
            return False
        if self.standalone is True:
            return True
        return ref.declared.startswith(self.system_prefixes) is False
