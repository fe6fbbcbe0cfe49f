from __future__ import annotations


class ToolError(RuntimeError):
    """Base error for tool operations."""


class CommandTimeoutError(ToolError):
    """Raised when a command exceeds its configured timeout."""


class CommandFailedError(ToolError):
    """Raised when a command exits with a non-zero status."""

    def __init__(self, command: str, exit_code: int, output: str = ""):
        detail = f"'{command}' exited with status {exit_code}"
        text = output.strip()
        if text:
            detail = f"{detail}: {text}"
        super().__init__(detail)
        self.command = command
        self.exit_code = exit_code
        self.output = output
