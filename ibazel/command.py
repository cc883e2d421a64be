"""Running a bazel target as a subprocess and reacting to source changes."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import tempfile
import threading
from typing import Callable, Mapping, Sequence

from ibazel.bazel import Bazel, BazelError

logger = logging.getLogger(__name__)

DEFAULT_WAIT_DURATION = 10.0

_SIGKILL = getattr(signal, "SIGKILL", signal.SIGTERM)


class _ProcessGroup:
    """A child process started in its own process group so signals reach all of it."""

    def __init__(self, program: str, args: Sequence[str] = ()):
        self.argv = [program, *args]
        self.env: Mapping[str, str] | None = None
        self.pipe_stdin = False
        self.process: subprocess.Popen | None = None

    def start(self) -> None:
        options: dict = {}
        if os.name == "posix":
            options["start_new_session"] = True
        else:
            options["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        self.process = subprocess.Popen(
            self.argv,
            env=None if self.env is None else dict(self.env),
            stdin=subprocess.PIPE if self.pipe_stdin else None,
            **options,
        )

    def signal(self, signum: int) -> None:
        process = self.process
        if process is None or process.returncode is not None:
            return
        try:
            if os.name == "posix":
                os.killpg(process.pid, signum)
            else:
                process.send_signal(signum)
        except (ProcessLookupError, PermissionError):
            pass

    def wait(self) -> int | None:
        if self.process is None:
            return None
        return self.process.wait()

    def close(self) -> None:
        if self.process is not None and self.process.stdin is not None:
            try:
                self.process.stdin.close()
            except OSError:
                pass


CommandFactory = Callable[[str, Sequence[str]], _ProcessGroup]


def subprocess_running(process: subprocess.Popen | None) -> bool:
    """True if ``process`` was started and has not been seen to exit."""
    return process is not None and process.returncode is None


def start(bazel, target: str, args: Sequence[str], command_factory: CommandFactory = _ProcessGroup):
    """Build ``target`` into a run script and prepare a process group for it.

    Returns the bazel output and the (not yet started) process group.
    """
    suffix = ".bat" if os.name == "nt" else ""
    fd, script_path = tempfile.mkstemp(prefix="bazel_script_path", suffix=suffix)
    # Closed so that bazel can write over it.
    os.close(fd)

    try:
        output = bazel.run(f"--script_path={script_path}", target)
    except BazelError as exc:
        logger.error("Error building %s: %s", target, exc)
        output = exc.output

    group = command_factory(script_path, list(args))
    return output, group


def kill(group: _ProcessGroup) -> None:
    """Send SIGKILL to the group if its root process still runs."""
    if subprocess_running(group.process):
        logger.info("Sending SIGKILL to the subprocess")
        group.signal(_SIGKILL)


def terminate(group: _ProcessGroup, wait_duration: float = DEFAULT_WAIT_DURATION) -> None:
    """Ask the group to stop with SIGTERM, falling back to SIGKILL after ``wait_duration``."""
    group.signal(signal.SIGTERM)

    def force() -> None:
        logger.info(
            "The subprocess wasn't terminated within %ss. Forcing to close.", wait_duration
        )
        kill(group)

    timer = threading.Timer(wait_duration, force)
    timer.daemon = True
    timer.start()
    try:
        group.wait()
    finally:
        timer.cancel()
    group.close()


class Command:
    """A bazel target run as a subprocess, restarted whenever sources change."""

    def __init__(
        self,
        startup_args: Sequence[str],
        bazel_args: Sequence[str],
        target: str,
        args: Sequence[str],
        bazel_factory: Callable[[], Bazel] = Bazel,
        command_factory: CommandFactory = _ProcessGroup,
        wait_duration: float = DEFAULT_WAIT_DURATION,
    ):
        self.startup_args = list(startup_args)
        self.bazel_args = list(bazel_args)
        self.target = target
        self.args = list(args)
        self.bazel_factory = bazel_factory
        self.command_factory = command_factory
        self.wait_duration = wait_duration
        self.group: _ProcessGroup | None = None
        self._term_lock = threading.Lock()
        self._terminated = False

    def _new_bazel(self):
        bazel = self.bazel_factory()
        bazel.startup_args = list(self.startup_args)
        bazel.args = list(self.bazel_args)
        bazel.write_to_stderr = True
        bazel.write_to_stdout = True
        return bazel

    def _launch(self, env: Mapping[str, str], pipe_stdin: bool) -> bytes:
        output, group = start(self._new_bazel(), self.target, self.args, self.command_factory)
        group.env = dict(env)
        group.pipe_stdin = pipe_stdin
        self.group = group
        try:
            group.start()
        except OSError as exc:
            logger.error("Error starting process: %s", exc)
            raise
        logger.info("Starting...")
        with self._term_lock:
            self._terminated = False
        return output

    def _restart(self) -> None:
        self.terminate()
        try:
            self.start()
        except OSError:
            pass  # already logged by _launch

    def start(self) -> bytes:
        """Build the target and start it; return bazel's output."""
        return self._launch(os.environ, pipe_stdin=False)

    def terminate(self) -> None:
        """Stop the subprocess gracefully, once per start."""
        group = self.group
        if group is None or not subprocess_running(group.process):
            self.group = None
            return
        with self._term_lock:
            if not self._terminated:
                self._terminated = True
                terminate(group, self.wait_duration)
        self.group = None

    def kill(self) -> None:
        """Kill the subprocess immediately."""
        if self.group is not None:
            kill(self.group)

    def notify_of_changes(self) -> bytes | None:
        """React to changed sources by restarting the subprocess."""
        self._restart()
        return None

    def is_subprocess_running(self) -> bool:
        return self.group is not None and subprocess_running(self.group.process)


class DefaultCommand(Command):
    """Normal mode: on every change the running server is killed and started again."""

    def start(self) -> bytes:
        """Build the target and start it with the current environment."""
        return self._launch(os.environ, pipe_stdin=False)

    def notify_of_changes(self) -> bytes | None:
        """Terminate the subprocess and start a fresh one."""
        self._restart()
        return None


class NotifyCommand(Command):
    """Notify mode: the subprocess is told about rebuilds on its stdin."""

    def start(self) -> bytes:
        """Start the target with a stdin pipe and IBAZEL_NOTIFY_CHANGES=y set."""
        return self._launch({**os.environ, "IBAZEL_NOTIFY_CHANGES": "y"}, pipe_stdin=True)

    def _send(self, message: str, what: str) -> None:
        group = self.group
        stdin = group.process.stdin if group is not None and group.process is not None else None
        if stdin is None:
            logger.error("Error writing %s to stdin: subprocess has no stdin", what)
            return
        try:
            stdin.write(message.encode())
            stdin.flush()
        except (OSError, ValueError) as exc:
            logger.error("Error writing %s to stdin: %s", what, exc)

    def notify_of_changes(self) -> bytes | None:
        """Rebuild, report the outcome on stdin, and start the subprocess if it is down."""
        bazel = self._new_bazel()
        self._send("IBAZEL_BUILD_STARTED\n", "build")
        try:
            output = bazel.build(self.target)
        except BazelError as exc:
            logger.error("IBAZEL BUILD FAILURE: %s", exc)
            self._send("IBAZEL_BUILD_COMPLETED FAILURE\n", "failure")
            return exc.output

        logger.info("IBAZEL BUILD SUCCESS")
        self._send("IBAZEL_BUILD_COMPLETED SUCCESS\n", "success")
        if not self.is_subprocess_running():
            logger.info("Restarting process...")
            self._restart()
        return output