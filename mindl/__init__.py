"""Mindl: a small directive language evaluated inside notes."""
from mindl.mindl_directives import (
    DirectiveResult, execute_directive, execute_all_directives, find_directives,
)
from mindl.mindl_runtime import DirectiveRunner, ExecutionResult

__version__ = "0.1.0"

__all__ = [
    "DirectiveResult",
    "DirectiveRunner",
    "ExecutionResult",
    "execute_directive",
    "execute_all_directives",
    "find_directives",
]
