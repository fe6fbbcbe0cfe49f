"""Tools and utilities for backend operations.

This package contains utilities for:
- Running external commands for the deploy pipeline (command_adapter.py)
- Exception types for tool operations (exceptions.py)

"""

from .command_adapter import CommandAdapter, CommandResult, OutputSink
from .exceptions import (
    CommandFailedError,
    CommandTimeoutError,
    ToolError,
)

__all__ = [
    # Adapters
    "CommandAdapter",
    "CommandResult",
    "OutputSink",
    # Exceptions
    "ToolError",
    "CommandFailedError",
    "CommandTimeoutError",
]
