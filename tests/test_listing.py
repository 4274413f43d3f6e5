import logging
import os
import pathlib
import tempfile
import unittest
from unittest import mock

from bundle_relocator.listing import (
    DumpbinLister,
    LddLister,
    LibraryReference,
    OtoolLister,
    UnresolvedLibraryError,
    parse_dumpbin_output,
    parse_ldd_output,
    parse_otool_id,
    parse_otool_output,
    parse_otool_rpaths,
)
from bundle_relocator.policy import WINDOWS_ALLOW_LIST
from bundle_relocator.tools import ToolOutput

LDD_OUTPUT = """\
\tlinux-vdso.so.1 (0x00007ffd4b7f2000)
\tlibswiftCore.so => /opt/swift/usr/lib/swift/linux/libswiftCore.so (0x00007f2a1c000000)
\tlibgtk-4.so.1 => /lib/x86_64-linux-gnu/libgtk-4.so.1 (0x00007f2a1b800000)
\tlibmissing.so => not found
\tlibc.so.6 => /lib/x86_64-linux-gnu/libc.so.6 (0x00007f2a1b400000)
\t/lib64/ld-linux-x86-64.so.2 (0x00007f2a1c400000)
"""

OTOOL_OUTPUT = """\
/build/debug/libFoo.dylib:
\t@rpath/libFoo.dylib (compatibility version 0.0.0, current version 0.0.0)
\t@rpath/libBar.dylib (compatibility version 0.0.0, current version 0.0.0)
\t/usr/lib/libSystem.B.dylib (compatibility version 1.0.0, current version 1345.100.2)
\t/opt/homebrew/opt/sdl2/lib/libSDL2-2.0.0.dylib (compatibility version 3001.0.0, current version 3001.8.0)
"""

OTOOL_LOAD_COMMANDS = """\
Load command 12
          cmd LC_LOAD_DYLIB
      cmdsize 56
         name /usr/lib/libSystem.B.dylib (offset 24)
Load command 13
          cmd LC_RPATH
      cmdsize 32
         path /usr/lib/swift (offset 12)
Load command 14
          cmd LC_RPATH
      cmdsize 48
         path @executable_path/../Libraries (offset 12)
Load command 15
      cmd LC_FUNCTION_STARTS
  cmdsize 16
"""

DUMPBIN_OUTPUT = """\
Microsoft (R) COFF/PE Dumper Version 14.38.33134.0
Copyright (C) Microsoft Corporation.  All rights reserved.


Dump of file C:\\build\\App.exe

File Type: EXECUTABLE IMAGE

  Image has the following dependencies:

    swiftCore.dll
    Foundation.dll
    KERNEL32.dll

  Summary

        1000 .data
"""


def _otool(listing: str, install_id: str | None):
    def run(name, args, **kwargs):
        if args[0] == "-D":
            stdout = f"{args[1]}:\n"
            if install_id is not None:
                stdout += f"{install_id}\n"
            return ToolOutput(stdout=stdout, stderr="")
        return ToolOutput(stdout=listing, stderr="")

    return run


class TestParsers(unittest.TestCase):
    def test_ldd_keeps_arrow_lines(self):
        refs = parse_ldd_output(LDD_OUTPUT)

        self.assertEqual(
            [r.declared for r in refs],
            ["libswiftCore.so", "libgtk-4.so.1", "libmissing.so", "libc.so.6"],
        )
        self.assertEqual(refs[0].path, pathlib.Path("/opt/swift/usr/lib/swift/linux/libswiftCore.so"))
        self.assertIsNone(refs[2].path)

    def test_ldd_reports_skipped_lines(self):
        with self.assertLogs("test.ldd", level="DEBUG") as logs:
            parse_ldd_output(LDD_OUTPUT, logger=logging.getLogger("test.ldd"))

        self.assertTrue(any("linux-vdso.so.1" in line for line in logs.output))
        self.assertFalse(any("libmissing.so" in line for line in logs.output))

    def test_otool_skips_header_and_own_id(self):
        self.assertEqual(
            parse_otool_output(OTOOL_OUTPUT, own_id="@rpath/libFoo.dylib"),
            [
                "@rpath/libBar.dylib",
                "/usr/lib/libSystem.B.dylib",
                "/opt/homebrew/opt/sdl2/lib/libSDL2-2.0.0.dylib",
            ],
        )

    def test_otool_without_own_id_keeps_everything(self):
        self.assertEqual(len(parse_otool_output(OTOOL_OUTPUT)), 4)

    def test_otool_id(self):
        self.assertEqual(
            parse_otool_id("/build/debug/libFoo.dylib:\n@rpath/libFoo.dylib\n"),
            "@rpath/libFoo.dylib",
        )
        self.assertIsNone(parse_otool_id("/build/debug/App:\n"))

    def test_otool_rpaths(self):
        self.assertEqual(
            parse_otool_rpaths(OTOOL_LOAD_COMMANDS),
            ["/usr/lib/swift", "@executable_path/../Libraries"],
        )

    def test_dumpbin_reads_the_dependency_block(self):
        self.assertEqual(parse_dumpbin_output(DUMPBIN_OUTPUT), ["swiftCore.dll", "Foundation.dll", "KERNEL32.dll"])

    def test_dumpbin_without_heading_is_empty(self):
        self.assertEqual(parse_dumpbin_output("Dump of file foo.exe\n\nFile Type: DLL\n"), [])

    def test_reference_name_handles_both_separators(self):
        self.assertEqual(LibraryReference(declared="@rpath/libFoo.dylib", path=None).name, "libFoo.dylib")
        self.assertEqual(LibraryReference(declared="C:\\bin\\Foo.dll", path=None).name, "Foo.dll")


class TestLddLister(unittest.TestCase):
    def test_exports_products_dir_as_library_path(self):
        products = pathlib.Path("/build/debug")
        with mock.patch(
            "bundle_relocator.listing.run_tool", return_value=ToolOutput(stdout=LDD_OUTPUT, stderr="")
        ) as run_tool:
            refs = LddLister(products).list_dependencies(pathlib.Path("/build/debug/App"))

        self.assertEqual(len(refs), 4)
        args, kwargs = run_tool.call_args
        self.assertEqual(args, ("ldd", ["/build/debug/App"]))
        self.assertEqual(kwargs["env"], {"LD_LIBRARY_PATH": str(products.resolve())})

    def test_no_products_dir_means_no_environment(self):
        with mock.patch(
            "bundle_relocator.listing.run_tool", return_value=ToolOutput(stdout="", stderr="")
        ) as run_tool:
            self.assertEqual(LddLister().list_dependencies(pathlib.Path("/x/App")), [])

        self.assertIsNone(run_tool.call_args.kwargs["env"])


class TestOtoolLister(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = pathlib.Path(self._tmp.name)
        self.products = self.tmp / "debug"
        (self.products / "PackageFrameworks").mkdir(parents=True)
        (self.products / "libBar.dylib").write_bytes(b"")
        self.exe = self.tmp / "App.app" / "Contents" / "MacOS" / "App"
        self.lister = OtoolLister(
            main_executable=self.exe,
            search_dirs=[self.products, self.products / "PackageFrameworks"],
        )

    def tearDown(self):
        self._tmp.cleanup()

    def test_resolves_rpath_from_search_dirs(self):
        self.assertEqual(
            self.lister.resolve("@rpath/libBar.dylib", binary=self.exe),
            self.products / "libBar.dylib",
        )
        self.assertIsNone(self.lister.resolve("@rpath/libNope.dylib", binary=self.exe))

    def test_resolves_loader_and_executable_paths(self):
        lib = self.tmp / "App.app" / "Contents" / "Libraries" / "libA.dylib"
        self.assertEqual(
            self.lister.resolve("@loader_path/libB.dylib", binary=lib),
            lib.parent / "libB.dylib",
        )
        self.assertEqual(
            self.lister.resolve("@executable_path/../Libraries/libB.dylib", binary=lib),
            self.exe.parent / "../Libraries/libB.dylib",
        )

    def test_absolute_and_unknown_tokens(self):
        self.assertEqual(
            self.lister.resolve(str(self.products / "libBar.dylib"), binary=self.exe),
            self.products / "libBar.dylib",
        )
        self.assertIsNone(self.lister.resolve(str(self.tmp / "cache-only" / "libSystem.B.dylib"), binary=self.exe))
        self.assertIsNone(self.lister.resolve("@weird/libX.dylib", binary=self.exe))

    def test_lists_and_drops_own_id_for_dylibs(self):
        with mock.patch(
            "bundle_relocator.listing.run_tool", side_effect=_otool(OTOOL_OUTPUT, "@rpath/libFoo.dylib")
        ) as run_tool:
            refs = self.lister.list_dependencies(self.products / "libFoo.dylib")

        self.assertEqual([c.args[1][0] for c in run_tool.call_args_list], ["-L", "-D"])
        self.assertEqual(
            [r.declared for r in refs],
            [
                "@rpath/libBar.dylib",
                "/usr/lib/libSystem.B.dylib",
                "/opt/homebrew/opt/sdl2/lib/libSDL2-2.0.0.dylib",
            ],
        )
        self.assertEqual(refs[0].path, self.products / "libBar.dylib")

    def test_renamed_framework_drops_its_id(self):
        listing = (
            "/out/App.app/Contents/Libraries/Foo.dylib:\n"
            "\t@rpath/Foo.framework/Versions/A/Foo (compatibility version 1.0.0, current version 1.0.0)\n"
            "\t/usr/lib/libSystem.B.dylib (compatibility version 1.0.0, current version 1345.100.2)\n"
        )
        with mock.patch(
            "bundle_relocator.listing.run_tool", side_effect=_otool(listing, "@rpath/Foo.framework/Versions/A/Foo")
        ):
            refs = self.lister.list_dependencies(self.tmp / "Foo.dylib")

        self.assertEqual([r.declared for r in refs], ["/usr/lib/libSystem.B.dylib"])

    def test_executables_keep_every_entry(self):
        with mock.patch("bundle_relocator.listing.run_tool", side_effect=_otool(OTOOL_OUTPUT, None)):
            refs = self.lister.list_dependencies(self.exe)

        self.assertEqual(len(refs), 4)


class TestDumpbinLister(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.tmp = pathlib.Path(self._tmp.name)
        self.products = self.tmp / "debug"
        self.products.mkdir()
        self.runtime = self.tmp / "runtime"
        self.runtime.mkdir()
        self.lister = DumpbinLister(products_dir=self.products, allow_list=WINDOWS_ALLOW_LIST)

    def tearDown(self):
        self._tmp.cleanup()

    def test_products_dir_wins(self):
        (self.products / "MyLib.dll").write_bytes(b"")
        self.assertEqual(self.lister.resolve("MyLib.dll"), self.products / "MyLib.dll")

    def test_system_dlls_stay_unresolved(self):
        self.assertIsNone(self.lister.resolve("KERNEL32.dll"))

    def test_allow_listed_dlls_are_searched_on_path(self):
        (self.runtime / "swiftCore.dll").write_bytes(b"")
        with mock.patch.dict(os.environ, {"PATH": os.pathsep.join(["", str(self.tmp), str(self.runtime)])}):
            self.assertEqual(self.lister.resolve("swiftCore.dll"), self.runtime / "swiftCore.dll")

    def test_missing_allow_listed_dll_is_fatal(self):
        with mock.patch.dict(os.environ, {"PATH": str(self.tmp)}):
            with self.assertRaises(UnresolvedLibraryError):
                self.lister.resolve("Foundation.dll")

    def test_lists_dependencies(self):
        (self.products / "Foundation.dll").write_bytes(b"")
        (self.runtime / "swiftCore.dll").write_bytes(b"")
        with mock.patch(
            "bundle_relocator.listing.run_tool", return_value=ToolOutput(stdout=DUMPBIN_OUTPUT, stderr="")
        ) as run_tool, mock.patch.dict(os.environ, {"PATH": str(self.runtime)}):
            refs = self.lister.list_dependencies(self.products / "App.exe")

        self.assertEqual(run_tool.call_args.args[1][0], "/DEPENDENTS")
        self.assertEqual(
            [(r.declared, r.path) for r in refs],
            [
                ("swiftCore.dll", self.runtime / "swiftCore.dll"),
                ("Foundation.dll", self.products / "Foundation.dll"),
                ("KERNEL32.dll", None),
            ],
        )


if __name__ == "__main__":
    unittest.main()
