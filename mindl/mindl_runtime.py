"""
DirectiveRunner: evaluates directives against an in-memory note store,
keeping positions for error reporting. The REPL and tests drive the
language through it.
"""
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Literal, Optional

from mindl.mindl_analyzers import (
    MutationValidator, RefreshAnalysis, RefreshTriggerAnalyzer, find_refresh_expr,
)
from mindl.mindl_builtins import ExecutionException
from mindl.mindl_directives import (
    DirectiveResult, build_display_text, execute_all_directives,
)
from mindl.mindl_environment import Environment, InMemoryOnceCache
from mindl.mindl_executor import Executor
from mindl.mindl_lexer import LexError
from mindl.mindl_notes import InMemoryNoteOperations, Note, NoteMutation
from mindl.mindl_parser import ParseError, parse_directive
from mindl.mindl_values import UNDEFINED, ButtonValue, DslValue, ScheduleValue


@dataclass
class ExecutionResult:
    """The structured result of running one directive."""
    status: Literal['success', 'error']
    value: Optional[DslValue] = None
    error_message: Optional[str] = None
    error_position: Optional[int] = None
    mutations: List[NoteMutation] = field(default_factory=list)
    refresh: Optional[RefreshAnalysis] = None
    source: str = ""

    def format_error(self) -> str:
        """Formats the error with a caret under the failing position when known."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_position is None or not self.source:
            return msg
        line, col = _line_col(self.source, self.error_position)
        return f"{msg} (line {line}, col {col})\n{_source_context(self.source, line, col)}"


def _line_col(source: str, position: int):
    before = source[:max(0, min(position, len(source)))]
    line = before.count("\n") + 1
    col = len(before) - (before.rfind("\n") + 1) + 1
    return line, col


def _source_context(source: str, line: int, col: Optional[int], radius: int = 2) -> str:
    lines = source.splitlines() or [""]
    if line < 1 or line > len(lines):
        return ""
    start = max(1, line - radius)
    end = min(len(lines), line + radius)
    width = len(str(end))
    out = []
    for i in range(start, end + 1):
        prefix = ">" if i == line else " "
        out.append(f"{prefix} {str(i).rjust(width)} | {lines[i - 1]}")
        if i == line and col is not None:
            out.append(f"  {' ' * width} | {' ' * max(col - 1, 0)}^")
    return "\n".join(out)


class DirectiveRunner:
    """Parses, validates and executes directives against one note store."""

    def __init__(self, note_operations: Optional[InMemoryNoteOperations] = None,
                 current_note: Optional[Note] = None,
                 executor: Optional[Executor] = None,
                 mocked_time: Optional[datetime] = None):
        self.note_operations = note_operations or InMemoryNoteOperations()
        self.current_note = current_note
        self.executor = executor or Executor()
        self.once_cache = InMemoryOnceCache()
        self.mocked_time = mocked_time

    def _dbg(self, *parts):
        if os.environ.get("MINDL_DEBUG"):
            print("[RUN]", *parts, file=sys.stderr)

    def _environment(self, current_note: Optional[Note]) -> Environment:
        env = Environment.create(
            notes=self.note_operations.all_notes(),
            current_note=current_note,
            note_operations=self.note_operations,
            once_cache=self.once_cache,
            mocked_time=self.mocked_time,
        )
        if current_note is not None:
            env = env.push_view_stack(current_note.id)
        return env

    def run(self, source: str) -> ExecutionResult:
        source = source.strip()
        try:
            directive = parse_directive(source)
        except LexError as e:
            return ExecutionResult('error', error_message=f"LexError: {e.message}",
                                   error_position=e.position, source=source)
        except ParseError as e:
            msg = f"ParseError: {e.message}"
            if e.expected:
                msg += f" (expected {e.expected})"
            return ExecutionResult('error', error_message=msg, error_position=e.position, source=source)

        validation = MutationValidator().validate(directive.expression)
        if not validation.is_valid():
            return ExecutionResult('error', error_message=f"ValidationError: {validation.error_message()}",
                                   source=source)

        env = self._environment(self.current_note)
        refresh = None
        refresh_expr = find_refresh_expr(directive.expression)
        if refresh_expr is not None:
            refresh = RefreshTriggerAnalyzer(self.executor.registry).analyze(refresh_expr, env)

        self._dbg("run", source)
        try:
            value = self.executor.execute(directive, env)
        except ExecutionException as e:
            return ExecutionResult('error', error_message=f"ExecutionError: {e.message}",
                                   error_position=e.position, mutations=env.mutations(),
                                   refresh=refresh, source=source)
        except Exception as e:
            return ExecutionResult('error', error_message=f"InternalError: {e}", mutations=env.mutations(),
                                   refresh=refresh, source=source)
        return ExecutionResult('success', value=value, mutations=env.mutations(),
                               refresh=refresh, source=source)

    def trigger(self, action: DslValue) -> ExecutionResult:
        """Run the action of a button or schedule with its parameters undefined."""
        if not isinstance(action, (ButtonValue, ScheduleValue)):
            return ExecutionResult('error', error_message=f"Cannot trigger a {action.type_name}")
        lam = action.action
        lam.env.clear_mutations()
        try:
            value = self.executor.invoke_lambda(lam, [UNDEFINED] * len(lam.params))
        except ExecutionException as e:
            return ExecutionResult('error', error_message=f"ExecutionError: {e.message}",
                                   mutations=lam.env.mutations())
        except Exception as e:
            return ExecutionResult('error', error_message=f"InternalError: {e}", mutations=lam.env.mutations())
        return ExecutionResult('success', value=value, mutations=lam.env.mutations())

    def run_note(self, note: Note) -> Dict[str, DirectiveResult]:
        """Every directive of `note`, keyed by `line:offset`."""
        results: Dict[str, DirectiveResult] = {}
        notes = self.note_operations.all_notes()
        for line_index, line in enumerate(note.content.split("\n")):
            results.update(execute_all_directives(
                line, line_index, notes, note, self.note_operations, self.once_cache, self.executor,
                self.mocked_time))
        return results

    def display_note(self, note: Note, results: Optional[Dict[str, DirectiveResult]] = None) -> str:
        if results is None:
            results = self.run_note(note)
        lines = [build_display_text(line, index, results).display_text
                 for index, line in enumerate(note.content.split("\n"))]
        return "\n".join(lines)
