"""Command line interface for bundle-relocator."""

import argparse
import logging
import pathlib
import sys

from bundle_relocator.builder import BuildError, BundleResult, build_bundle
from bundle_relocator.listing import LibraryReference
from bundle_relocator.platforms import Toolchain, toolchain_for
from bundle_relocator.relocator import RelocationError
from bundle_relocator.target import TargetConfig, TargetResolutionError, resolve_target_config
from bundle_relocator.tools import ToolError


def _configure_logging(*, verbose: int, quiet: int) -> logging.Logger:
    """Configure the bundle-relocator logger.

    :param verbose: Verbosity count (0+).
    :param quiet: Quietness count (0+).
    :returns: Configured logger.
    """

    level: int = logging.INFO
    if quiet >= 2:
        level = logging.ERROR
    elif quiet >= 1:
        level = logging.WARNING
    elif verbose >= 1:
        level = logging.DEBUG

    logger: logging.Logger = logging.getLogger("bundle_relocator")
    logger.setLevel(level)
    logger.propagate = False

    handler: logging.Handler = logging.StreamHandler(stream=sys.stderr)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s"))

    logger.handlers.clear()
    logger.addHandler(handler)
    return logger


def _add_common_arguments(p: argparse.ArgumentParser) -> None:
    p.add_argument(
        "--target",
        type=str,
        default="native",
        help=(
            "Target triple (e.g. x86_64-unknown-linux-gnu) or platform name "
            "(linux, macos, ios, tvos, visionos, windows). Use 'native' for the current host."
        ),
    )
    p.add_argument(
        "--arch",
        type=str,
        default=None,
        help="Override the target architecture (e.g. x86_64, arm64).",
    )
    p.add_argument(
        "--products-dir",
        type=pathlib.Path,
        default=None,
        help="Build products directory (defaults to the executable's directory).",
    )
    p.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Enable verbose logging. Pass multiple times for more detail.",
    )
    p.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Reduce logging. Pass multiple times to suppress more output.",
    )


def main(argv: list[str] | None = None) -> int:
    """Run the bundle-relocator CLI.

    :param argv: Optional argv list (excluding program name).
    :returns: Exit code.
    """

    parser: argparse.ArgumentParser = argparse.ArgumentParser(
        prog="bundle-relocator",
        description="Turn a built executable into a self-contained, relocatable app bundle.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    p_bundle = subparsers.add_parser(
        "bundle",
        help="Create an app bundle and relocate its dynamic libraries into it.",
    )
    p_bundle.add_argument(
        "executable",
        type=pathlib.Path,
        help="Path to the built executable.",
    )
    p_bundle.add_argument(
        "-o",
        "--output",
        type=pathlib.Path,
        required=True,
        help="Directory to create the bundle in.",
    )
    p_bundle.add_argument(
        "--app-name",
        type=str,
        default=None,
        help="App name (defaults to the executable's name).",
    )
    p_bundle.add_argument(
        "--executable-dependency",
        type=pathlib.Path,
        action="append",
        default=[],
        help="Extra executable to ship next to the main one. May be repeated.",
    )
    p_bundle.add_argument(
        "--standalone",
        action="store_true",
        help="Darwin only: also bundle libraries owned by the OS.",
    )
    p_bundle.add_argument(
        "--allow-outside-bundle",
        action="store_true",
        help="Allow relative references that leave the bundle root.",
    )
    _add_common_arguments(p_bundle)

    p_deps = subparsers.add_parser(
        "deps",
        help="List a binary's dynamic library references and whether they would be bundled.",
    )
    p_deps.add_argument(
        "binary",
        type=pathlib.Path,
        help="Path to an executable or library.",
    )
    p_deps.add_argument(
        "--standalone",
        action="store_true",
        help="Darwin only: evaluate the standalone policy.",
    )
    _add_common_arguments(p_deps)

    ns = parser.parse_args(argv)
    logger: logging.Logger = _configure_logging(verbose=ns.verbose, quiet=ns.quiet)
    try:
        target_cfg: TargetConfig = resolve_target_config(target=ns.target, arch_override=ns.arch)

        if ns.command == "bundle":
            result: BundleResult = build_bundle(
                executable=ns.executable,
                output_dir=ns.output,
                target=target_cfg,
                app_name=ns.app_name,
                products_dir=ns.products_dir,
                executable_dependencies=ns.executable_dependency,
                standalone=ns.standalone,
                confine_to_bundle=not ns.allow_outside_bundle,
                logger=logger,
            )
            print(result.structure.root)
            return 0

        if ns.command == "deps":
            toolchain: Toolchain = toolchain_for(
                target_cfg,
                main_executable=ns.binary,
                products_dir=ns.products_dir,
                standalone=ns.standalone,
                logger=logger,
            )
            refs: list[LibraryReference] = toolchain.lister.list_dependencies(ns.binary)
            for ref in refs:
                verdict: str = "bundle" if toolchain.policy.is_eligible(ref) is True else "system"
                location: str = str(ref.path) if ref.path is not None else "not found"
                print(f"{verdict:<7} {ref.declared} => {location}")
            return 0
    except (BuildError, RelocationError, ToolError, TargetResolutionError) as e:
        logger.error(f"bundle-relocator: error: {e}")
        return 1

    raise AssertionError(f"Unhandled command: {ns.command}")
