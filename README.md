# ibazel

A small library for driving Bazel from Python: run `bazel info`, `build`,
`test` and `run`, and keep a target's process alive across source changes.
It has no dependencies outside the standard library.

## Installing

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Finding Bazel

`ibazel.bazel.find_bazel(bazel_path=None, program=None)` chooses the Bazel
binary to use:

1. An explicit `bazel_path` always wins.
2. Otherwise it looks next to `program` (by default `sys.argv[0]`) for
   Bazelisk installed from the `@bazel/bazelisk` npm package
   (`bazelisk_npm_path`), then for Bazel installed from the `@bazel/bazel`
   npm package (`bazel_npm_path`). Both expect `program` to live under
   `node_modules/@bazel/ibazel/bin/<platform>/`.
3. Then `bazelisk` and `bazel` on `PATH`.
4. If nothing is found it returns `"bazel"`, so starting it later fails with
   a clear error.

`bazel_npm_path` and `bazelisk_npm_path` raise `BazelError` when no binary is
found.

## Running Bazel

```python
from ibazel.bazel import Bazel, BazelError

b = Bazel()
print(b.info()["output_base"])

try:
    output = b.build("//path/to:target")
except BazelError as exc:
    print(exc.returncode, exc.output.decode())
```

`Bazel(bazel_path=None)` runs one Bazel command per call. Its plain
attributes `startup_args` and `args` are placed before the command and before
the command's own arguments respectively (`args` applies to `build`, `test`
and `run`); `write_to_stdout` and `write_to_stderr` echo Bazel's output to the
terminal while it is also collected.

- `info()` runs `bazel info` and returns its `key: value` lines as a dict.
  The same parsing is available as `parse_info(text)`, which skips blank
  lines and the "Starting local Bazel server" message and raises `BazelError`
  for any other line that is not a key-value pair.
- `build(*args)` and `test(*args)` return stdout followed by stderr as bytes.
- `run(*args)` echoes output to the terminal, passes the terminal's stdin
  through, and returns Bazel's stderr.
- `command_line(command, *args)` shows the exact argument list that would be
  started, including `--color=yes` when output is echoed and no `--color`
  option was given.
- `wait()` waits for the last command and raises `BazelError` if it failed or
  if none was started.
- `cancel()` kills the running command and does nothing when nothing runs.

Every failing command raises `BazelError`, which carries the collected
`output` and the `returncode`.

## Keeping a target running

`ibazel.command` holds two ways of running a target. Both take
`(startup_args, bazel_args, target, args)`, plus optional `bazel_factory`,
`command_factory` and `wait_duration` (seconds, 10 by default).

- `DefaultCommand.start()` builds the target into a run script with
  `bazel run --script_path=...`, starts the script in its own process group
  with the current environment, and returns Bazel's output.
  `notify_of_changes()` terminates the process and starts a fresh one.
- `NotifyCommand.start()` does the same but sets `IBAZEL_NOTIFY_CHANGES=y`
  and gives the process a stdin pipe. `notify_of_changes()` writes
  `IBAZEL_BUILD_STARTED` to that stdin, runs `bazel build` on the target, then
  writes `IBAZEL_BUILD_COMPLETED SUCCESS` or `IBAZEL_BUILD_COMPLETED FAILURE`.
  After a successful build a process that is no longer running is started
  again. It returns the build output.

```python
from ibazel.command import DefaultCommand

cmd = DefaultCommand([], [], "//server:main", ["--port=8080"])
cmd.start()
# ... after sources change:
cmd.notify_of_changes()
cmd.terminate()
```

`terminate()` sends SIGTERM to the process group and waits; if the process
has not exited after `wait_duration` seconds it is sent SIGKILL. It acts at
most once per start. `kill()` sends SIGKILL straight away while the process
runs, and `is_subprocess_running()` reports whether it does.

The module-level helpers `start`, `terminate`, `kill` and
`subprocess_running` are the building blocks the command classes use.

## What this package does not do

- It does not watch files. Something else has to notice changed sources and
  call `notify_of_changes()`.
- There is no command-line program; it is a library only.
- It does not run `bazel query` or `bazel cquery`, and it has no live-reload
  server, profiler or lifecycle hooks.