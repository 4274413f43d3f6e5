import os
import pathlib
import subprocess
import unittest
from unittest import mock

from bundle_relocator.tools import ToolInvocationError, ToolNotFoundError, locate_tool, run_tool


def _completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestLocateTool(unittest.TestCase):
    @mock.patch("bundle_relocator.tools.shutil.which", return_value=None)
    def test_missing_tool_names_a_remediation(self, _which):
        with self.assertRaises(ToolNotFoundError) as ctx:
            locate_tool("patchelf")

        self.assertEqual(ctx.exception.tool, "patchelf")
        self.assertIn("Install patchelf", str(ctx.exception))

    @mock.patch("bundle_relocator.tools.shutil.which", return_value="/usr/bin/patchelf")
    def test_found_tool(self, _which):
        self.assertEqual(locate_tool("patchelf"), pathlib.Path("/usr/bin/patchelf"))


@mock.patch("bundle_relocator.tools.shutil.which", return_value="/usr/bin/ldd")
class TestRunTool(unittest.TestCase):
    def test_captures_output(self, _which):
        with mock.patch("bundle_relocator.tools.subprocess.run", return_value=_completed(stdout="ok\n")) as run:
            out = run_tool("ldd", ["/bin/true"])

        self.assertEqual(out.stdout, "ok\n")
        argv = run.call_args.args[0]
        self.assertEqual(argv, [str(pathlib.Path("/usr/bin/ldd")), "/bin/true"])
        self.assertIs(run.call_args.kwargs["check"], False)
        self.assertIsNone(run.call_args.kwargs["env"])

    def test_extra_environment_is_layered_over_os_environ(self, _which):
        with mock.patch.dict(os.environ, {"HOME": "/home/me"}), mock.patch(
            "bundle_relocator.tools.subprocess.run", return_value=_completed()
        ) as run:
            run_tool("ldd", ["/bin/true"], env={"LD_LIBRARY_PATH": "/build"})

        env = run.call_args.kwargs["env"]
        self.assertEqual(env["LD_LIBRARY_PATH"], "/build")
        self.assertEqual(env["HOME"], "/home/me")

    def test_failure_carries_stderr(self, _which):
        with mock.patch(
            "bundle_relocator.tools.subprocess.run",
            return_value=_completed(returncode=1, stdout="noise", stderr="not a dynamic executable\n"),
        ):
            with self.assertRaises(ToolInvocationError) as ctx:
                run_tool("ldd", ["/etc/passwd"])

        self.assertEqual(ctx.exception.returncode, 1)
        self.assertEqual(ctx.exception.output, "not a dynamic executable\n")
        self.assertIn("exit=1", str(ctx.exception))

    def test_failure_falls_back_to_stdout(self, _which):
        with mock.patch(
            "bundle_relocator.tools.subprocess.run",
            return_value=_completed(returncode=2, stdout="bad file", stderr=""),
        ):
            with self.assertRaises(ToolInvocationError) as ctx:
                run_tool("ldd", ["x"])

        self.assertEqual(ctx.exception.output, "bad file")


if __name__ == "__main__":
    unittest.main()
