"""Driving the bazel binary: locating it, running commands and reading output."""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
import sys
import threading
from functools import partial
from typing import IO, Iterable

logger = logging.getLogger(__name__)

_STARTUP_MESSAGE = "Starting local Bazel server and connecting to it..."
_SLOW_INFO_SECONDS = 8.0
_CHUNK_SIZE = 65536


class BazelError(Exception):
    """Raised when bazel cannot be found, started, or reports a failure."""

    def __init__(self, message: str, output: bytes = b"", returncode: int | None = None):
        super().__init__(message)
        self.output = output
        self.returncode = returncode


def _ibazel_bin_layout(ibazel_bin_path: str) -> Iterable[tuple[list[str], str]]:
    """Yield (prefix, bin_dir) for every node_modules/@bazel/ibazel/bin/<bin> match."""
    parts = ibazel_bin_path.split("/")
    for i in range(len(parts) - 4):
        nm, scope, pkg, directory, bin_dir = parts[i : i + 5]
        if nm == "node_modules" and scope == "@bazel" and pkg == "ibazel" and directory == "bin":
            yield parts[:i], bin_dir


def bazel_npm_path(ibazel_bin_path: str) -> str:
    """Find the bazel binary shipped by the @bazel/bazel npm package next to ibazel."""
    for prefix, bin_dir in _ibazel_bin_layout(ibazel_bin_path):
        # ibazel uses "amd64" in its arch names while @bazel/bazel uses node's "x64".
        arch = bin_dir.replace("amd64", "x64", 1)
        directory = "/".join([*prefix, "node_modules", "@bazel", "bazel-" + arch])
        try:
            names = sorted(os.listdir(directory.replace("/", os.sep)))
        except OSError:
            continue
        for name in names:
            if name.startswith("bazel-"):
                return f"{directory}/{name}"
    raise BazelError("bazel binary not found in @bazel/bazel package")


def bazelisk_npm_path(ibazel_bin_path: str) -> str:
    """Find the bazelisk binary shipped by the @bazel/bazelisk npm package next to ibazel."""
    for prefix, bin_dir in _ibazel_bin_layout(ibazel_bin_path):
        ext = ".exe" if bin_dir.startswith("windows_") else ""
        name = "/".join([*prefix, "node_modules", "@bazel", "bazelisk", f"bazelisk-{bin_dir}{ext}"])
        try:
            os.stat(name)
        except FileNotFoundError:
            continue
        except OSError as exc:
            raise BazelError(str(exc)) from exc
        return name
    raise BazelError("bazelisk binary not found in @bazel/bazelisk package")


def find_bazel(bazel_path: str | None = None, program: str | None = None) -> str:
    """Pick the bazel binary to use.

    An explicit path always wins; then npm-installed bazelisk and bazel next to
    ``program``; then bazelisk and bazel on PATH. Falls back to plain "bazel" so
    that starting it produces a clear not-found error.
    """
    if bazel_path:
        return bazel_path
    slashed = (program if program is not None else sys.argv[0]).replace(os.sep, "/")
    for lookup in (bazelisk_npm_path, bazel_npm_path):
        try:
            return lookup(slashed).replace("/", os.sep)
        except BazelError:
            pass
    for name in ("bazelisk", "bazel"):
        found = shutil.which(name)
        if found:
            return found
    return "bazel"


def parse_info(info: str) -> dict[str, str]:
    """Parse the "key: value" lines printed by ``bazel info``."""
    output: dict[str, str] = {}
    for line in info.split("\n"):
        if not line or _STARTUP_MESSAGE in line:
            continue
        key, sep, value = line.partition(": ")
        if not sep:
            raise BazelError("Bazel info returned a non key-value pair")
        output[key] = value
    return output


def _write_to(sink: IO, chunk: bytes) -> None:
    binary = getattr(sink, "buffer", None)
    if binary is not None:
        binary.write(chunk)
        binary.flush()
    else:
        sink.write(chunk.decode(errors="replace"))
        sink.flush()


def _pump(stream: IO[bytes], sink: IO | None, chunks: list[bytes]) -> None:
    for chunk in iter(partial(stream.read1, _CHUNK_SIZE), b""):
        chunks.append(chunk)
        if sink is not None:
            _write_to(sink, chunk)
    stream.close()


class Bazel:
    """One bazel client; each call runs a single bazel command."""

    def __init__(self, bazel_path: str | None = None):
        self.bazel_path = bazel_path
        self.args: list[str] = []
        self.startup_args: list[str] = []
        self.write_to_stderr = False
        self.write_to_stdout = False
        self._process: subprocess.Popen | None = None

    def command_line(self, command: str, *args: str) -> list[str]:
        """Full argv for running ``command`` with ``args``."""
        argv = [*self.startup_args, command, *args]
        if (self.write_to_stderr or self.write_to_stdout) and not any(
            arg.startswith("--color") for arg in argv
        ):
            argv.append("--color=yes")
        return [find_bazel(self.bazel_path), *argv]

    def _execute(self, command: str, args: Iterable[str], interactive: bool = False) -> tuple[int, bytes, bytes]:
        argv = self.command_line(command, *args)
        try:
            process = subprocess.Popen(
                argv,
                stdin=None if interactive else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise BazelError(f"could not start {argv[0]}: {exc}") from exc
        self._process = process
        out: list[bytes] = []
        err: list[bytes] = []
        pumps = [
            threading.Thread(
                target=_pump,
                args=(process.stdout, sys.stdout if self.write_to_stdout else None, out),
                daemon=True,
            ),
            threading.Thread(
                target=_pump,
                args=(process.stderr, sys.stderr if self.write_to_stderr else None, err),
                daemon=True,
            ),
        ]
        for pump in pumps:
            pump.start()
        returncode = process.wait()
        for pump in pumps:
            pump.join()
        return returncode, b"".join(out), b"".join(err)

    @staticmethod
    def _check(command: str, returncode: int, output: bytes) -> None:
        if returncode != 0:
            raise BazelError(
                f"bazel {command} exited with status {returncode}",
                output=output,
                returncode=returncode,
            )

    def info(self) -> dict[str, str]:
        """Run ``bazel info`` and return its key/value pairs."""
        self.write_to_stderr = False
        self.write_to_stdout = False
        timer = threading.Timer(
            _SLOW_INFO_SECONDS,
            logger.info,
            args=("Running `bazel info`... it's being a little slow",),
        )
        timer.daemon = True
        timer.start()
        try:
            returncode, out, err = self._execute("info", [])
        finally:
            timer.cancel()
        self._check("info", returncode, out + err)
        return parse_info(out.decode(errors="replace"))

    def build(self, *args: str) -> bytes:
        """Run ``bazel build``; return stdout followed by stderr."""
        returncode, out, err = self._execute("build", [*self.args, *args])
        self._check("build", returncode, out + err)
        return out + err

    def test(self, *args: str) -> bytes:
        """Run ``bazel test``; return stdout followed by stderr."""
        returncode, out, err = self._execute("test", [*self.args, *args])
        self._check("test", returncode, out + err)
        return out + err

    def run(self, *args: str) -> bytes:
        """Build and run a single target, echoing its output; return its stderr."""
        self.write_to_stderr = True
        self.write_to_stdout = True
        returncode, _, err = self._execute("run", [*self.args, *args], interactive=True)
        self._check("run", returncode, err)
        return err

    def wait(self) -> None:
        """Wait for the last command; raise if it did not succeed."""
        if self._process is None:
            raise BazelError("no bazel command has been started")
        returncode = self._process.wait()
        self._check("command", returncode, b"")

    def cancel(self) -> None:
        """Stop the running command, if there is one."""
        if self._process is None or self._process.poll() is not None:
            return
        self._process.kill()