"""Drive Bazel and keep a target's process running across source changes."""

__version__ = "0.1.0"
__all__ = ["bazel", "command"]