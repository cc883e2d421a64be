import os
import re
import signal
import subprocess
import sys
import time

import pytest

from ibazel.bazel import BazelError
from ibazel.command import (
    DefaultCommand,
    NotifyCommand,
    _ProcessGroup,
    kill,
    start,
    subprocess_running,
    terminate,
)

TARGET = "//path/to:target"
SLEEP = "import time; time.sleep(10)"
QUICK = "pass"
COPY_STDIN = (
    "import os, sys\n"
    "data = sys.stdin.read()\n"
    "open(sys.argv[1], 'w').write(os.environ.get('IBAZEL_NOTIFY_CHANGES', '-') + '\\n' + data)\n"
)


class FakeBazel:
    def __init__(self):
        self.actions = []
        self.build_error = None
        self.startup_args = []
        self.args = []
        self._stderr = False
        self._stdout = False

    @property
    def write_to_stderr(self):
        return self._stderr

    @write_to_stderr.setter
    def write_to_stderr(self, value):
        self.actions.append(["WriteToStderr"])
        self._stderr = value

    @property
    def write_to_stdout(self):
        return self._stdout

    @write_to_stdout.setter
    def write_to_stdout(self, value):
        self.actions.append(["WriteToStdout"])
        self._stdout = value

    def run(self, *args):
        self.actions.append(["Run", *args])
        return b""

    def build(self, *args):
        self.actions.append(["Build", *args])
        if self.build_error is not None:
            raise self.build_error
        return b"built"


def assert_actions(bazel, expected):
    assert len(bazel.actions) == len(expected), bazel.actions
    for got, want in zip(bazel.actions, expected):
        assert len(got) == len(want), bazel.actions
        for value, pattern in zip(got, want):
            assert re.fullmatch(pattern, value), (value, pattern)


def python_group(code, *args):
    return _ProcessGroup(sys.executable, ["-c", code, *args])


def python_factory(code):
    def factory(path, args):
        return python_group(code, *args)

    return factory


def test_subprocess_running():
    assert subprocess_running(None) is False

    group = python_group(QUICK)
    assert subprocess_running(group.process) is False

    process = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(0.1)"])
    assert subprocess_running(process) is True

    assert process.wait() == 0
    assert subprocess_running(process) is False


def test_default_command_notify_kills_running_process():
    to_kill = python_group(SLEEP)
    bazel = FakeBazel()
    c = DefaultCommand(
        [], [], TARGET, ["moo"],
        bazel_factory=lambda: bazel,
        command_factory=python_factory(QUICK),
    )
    c.group = to_kill

    assert c.is_subprocess_running() is False
    to_kill.start()
    assert c.is_subprocess_running() is True

    assert c.notify_of_changes() is None
    assert to_kill.process.returncode == -signal.SIGTERM
    assert c.group is not to_kill
    assert c.group.wait() == 0
    assert_actions(bazel, [
        ["WriteToStderr"],
        ["WriteToStdout"],
        ["Run", "--script_path=.*", TARGET],
    ])


def test_start_builds_script_and_prepares_group():
    bazel = FakeBazel()
    calls = []

    def factory(path, args):
        calls.append((path, list(args)))
        return python_group(QUICK)

    output, group = start(bazel, TARGET, ["moo"], factory)
    try:
        assert output == b""
        assert len(calls) == 1
        script, args = calls[0]
        assert args == ["moo"]
        assert os.path.basename(script).startswith("bazel_script_path")
        assert os.path.isfile(script)
        assert_actions(bazel, [["Run", f"--script_path={re.escape(script)}", TARGET]])
        group.start()
        assert group.wait() == 0
    finally:
        os.remove(calls[0][0])


def test_start_keeps_output_of_failed_run():
    class FailingBazel(FakeBazel):
        def run(self, *args):
            super().run(*args)
            raise BazelError("bazel run exited with status 1", output=b"broken")

    bazel = FailingBazel()
    output, group = start(bazel, TARGET, [], python_factory(QUICK))
    assert output == b"broken"
    assert group.argv == [sys.executable, "-c", QUICK]


def test_notify_command_actions(tmp_path):
    missing = str(tmp_path / "missing-program")
    bazel = FakeBazel()
    c = NotifyCommand(
        [], [], TARGET, ["moo"],
        bazel_factory=lambda: bazel,
        command_factory=lambda path, args: _ProcessGroup(missing, args),
    )
    c.group = python_group("import sys; sys.stdin.read()")

    assert c.is_subprocess_running() is False

    assert c.notify_of_changes() == b"built"
    bazel.build_error = BazelError("Demo error", output=b"failed")
    assert c.notify_of_changes() == b"failed"
    bazel.build_error = None
    c.notify_of_changes()

    assert_actions(bazel, [
        ["WriteToStderr"],
        ["WriteToStdout"],
        ["Build", TARGET],
        ["WriteToStderr"],
        ["WriteToStdout"],
        ["Run", "--script_path=.*", TARGET],
        ["WriteToStderr"],
        ["WriteToStdout"],
        ["Build", TARGET],
        ["WriteToStderr"],
        ["WriteToStdout"],
        ["Build", TARGET],
        ["WriteToStderr"],
        ["WriteToStdout"],
        ["Run", "--script_path=.*", TARGET],
    ])


def test_notify_command_restart():
    bazel = FakeBazel()
    bazel.build_error = BazelError("Demo error")
    c = NotifyCommand(
        [], [], TARGET, ["moo"],
        bazel_factory=lambda: bazel,
        command_factory=python_factory(SLEEP),
        wait_duration=5.0,
    )
    c.group = python_group(QUICK)
    try:
        assert c.is_subprocess_running() is False

        c.notify_of_changes()
        assert c.is_subprocess_running() is False

        bazel.build_error = None
        c.notify_of_changes()
        assert c.is_subprocess_running() is True
        pid1 = c.group.process.pid

        c.terminate()
        assert c.is_subprocess_running() is False
        assert c.group is None

        bazel.build_error = BazelError("Demo error")
        c.notify_of_changes()
        assert c.is_subprocess_running() is False

        bazel.build_error = None
        c.notify_of_changes()
        assert c.is_subprocess_running() is True
        pid2 = c.group.process.pid
        assert pid2 != pid1

        c.notify_of_changes()
        assert c.group.process.pid == pid2
    finally:
        c.terminate()


@pytest.mark.parametrize(
    "build_error, status",
    [(None, "SUCCESS"), (BazelError("Demo error"), "FAILURE")],
)
def test_notify_command_reports_on_stdin(tmp_path, build_error, status):
    out = tmp_path / "received.txt"
    bazel = FakeBazel()
    c = NotifyCommand(
        [], [], TARGET, [str(out)],
        bazel_factory=lambda: bazel,
        command_factory=python_factory(COPY_STDIN),
    )
    c.start()
    assert c.is_subprocess_running() is True

    bazel.build_error = build_error
    c.notify_of_changes()
    group = c.group
    group.close()
    assert group.wait() == 0

    assert out.read_text() == (
        "y\nIBAZEL_BUILD_STARTED\nIBAZEL_BUILD_COMPLETED " + status + "\n"
    )


def test_default_command_sets_no_notify_variable(tmp_path):
    out = tmp_path / "env.txt"
    code = "import os, sys; open(sys.argv[1], 'w').write(os.environ.get('IBAZEL_NOTIFY_CHANGES', '-'))"
    c = DefaultCommand(
        [], [], TARGET, [str(out)],
        bazel_factory=FakeBazel,
        command_factory=python_factory(code),
    )
    assert c.start() == b""
    assert c.group.wait() == 0
    assert out.read_text() == "-"
    assert c.group.pipe_stdin is False


def test_start_raises_when_program_is_missing(tmp_path):
    missing = str(tmp_path / "missing-program")
    c = DefaultCommand(
        [], [], TARGET, [],
        bazel_factory=FakeBazel,
        command_factory=lambda path, args: _ProcessGroup(missing, args),
    )
    with pytest.raises(OSError):
        c.start()
    assert c.is_subprocess_running() is False


def test_kill_running_group():
    group = python_group(SLEEP)
    group.start()
    kill(group)
    assert group.wait() == -signal.SIGKILL


def test_kill_unstarted_group_is_harmless():
    group = python_group(SLEEP)
    kill(group)
    assert group.process is None
    assert group.wait() is None


def test_terminate_graceful():
    group = python_group(SLEEP)
    group.start()
    terminate(group, 5.0)
    assert group.process.returncode == -signal.SIGTERM


def test_terminate_falls_back_to_kill(tmp_path):
    ready = tmp_path / "ready"
    code = (
        "import signal, sys, time\n"
        "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
        "open(sys.argv[1], 'w').close()\n"
        "time.sleep(30)\n"
    )
    group = python_group(code, str(ready))
    group.start()
    deadline = time.monotonic() + 10
    while not ready.exists() and time.monotonic() < deadline:
        time.sleep(0.01)
    assert ready.exists()

    terminate(group, 0.2)
    assert group.process.returncode == -signal.SIGKILL


def test_command_kill_and_terminate_without_group():
    c = DefaultCommand([], [], TARGET, [], bazel_factory=FakeBazel)
    c.kill()
    c.terminate()
    assert c.group is None
    assert c.is_subprocess_running() is False