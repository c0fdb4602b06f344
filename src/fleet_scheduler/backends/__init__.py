"""Execution backend adapters."""

from .base import (
    BackendAdapter,
    BackendCallError,
    BackendError,
    BackendNotFoundError,
    SessionOptions,
    SessionReadyCallback,
    SessionResult,
)
from .cli import ClaudeAdapter, CliBackendAdapter, CodexAdapter, CopilotAdapter
from .factory import build_adapter, build_adapters

__all__ = [
    "BackendAdapter",
    "BackendCallError",
    "BackendError",
    "BackendNotFoundError",
    "ClaudeAdapter",
    "CliBackendAdapter",
    "CodexAdapter",
    "CopilotAdapter",
    "SessionOptions",
    "SessionReadyCallback",
    "SessionResult",
    "build_adapter",
    "build_adapters",
]
