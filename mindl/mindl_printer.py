"""
A pretty-printer for Mindl values, used by the REPL.

Unlike `DslValue.display()`, which is what a note shows in place of a
directive, `pformat` keeps enough shape to tell values apart: strings are
quoted, notes are tagged, long lists break over several indented lines.
"""
from mindl.mindl_values import (
    UndefinedValue, NumberValue, StringValue, BooleanValue,
    DateValue, TimeValue, DateTimeValue, PatternValue, ListValue, NoteValue,
    LambdaValue, ViewValue, ButtonValue, ScheduleValue, format_number,
)

_STRING_ESCAPES = {'\\': '\\\\', '"': '\\"', '\n': '\\n', '\t': '\\t', '\r': '\\r'}


class Printer:
    """Formats Mindl values into readable strings."""

    def __init__(self, indent_width=2, line_width=72):
        self._indent_char = " " * indent_width
        self._line_width = line_width
        self._handlers = self._create_handlers()

    def pformat(self, obj, level=0):
        """Public entry point to format an object."""
        handler = self._get_handler(obj)
        return handler(obj, level)

    def _get_handler(self, obj):
        obj_type = type(obj)
        if obj_type in self._handlers:
            return self._handlers[obj_type]
        if isinstance(obj, (list, tuple)):
            return self._pformat_sequence
        # Default to Python's repr for unknown types
        return lambda o, l: repr(o)

    def _create_handlers(self):
        return {
            UndefinedValue: self._pformat_undefined,
            NumberValue: self._pformat_number,
            StringValue: self._pformat_string,
            BooleanValue: self._pformat_display,
            DateValue: self._pformat_temporal,
            TimeValue: self._pformat_temporal,
            DateTimeValue: self._pformat_temporal,
            PatternValue: self._pformat_display,
            ListValue: self._pformat_list,
            NoteValue: self._pformat_note,
            LambdaValue: self._pformat_display,
            ViewValue: self._pformat_view,
            ButtonValue: self._pformat_display,
            ScheduleValue: self._pformat_display,
            str: self._pformat_str,
        }

    def _pformat_undefined(self, obj, level):
        return 'undefined'

    def _pformat_number(self, obj, level):
        return format_number(obj.value)

    def _pformat_str(self, obj, level):
        escaped = "".join(_STRING_ESCAPES.get(c, c) for c in obj)
        return f'"{escaped}"'

    def _pformat_string(self, obj, level):
        return self._pformat_str(obj.value, level)

    def _pformat_display(self, obj, level):
        return obj.display()

    def _pformat_temporal(self, obj, level):
        return f"{obj.type_name} {obj.display()}"

    def _pformat_note(self, obj, level):
        note = obj.note
        label = note.path or note.first_line or note.id
        return f"note({label})"

    def _pformat_list(self, obj, level):
        return self._pformat_sequence(obj.items, level)

    def _pformat_sequence(self, items, level):
        parts = [self.pformat(item, level + 1) for item in items]
        inline = "[" + ", ".join(parts) + "]"
        if '\n' not in inline and len(self._indent_char * level) + len(inline) <= self._line_width:
            return inline
        return self._pformat_block(parts, level, '[', ']')

    def _pformat_block(self, parts, level, open_char, close_char):
        if not parts:
            return f"{open_char}{close_char}"

        outer_indent = self._indent_char * level
        inner_indent = self._indent_char * (level + 1)

        lines = []
        for part in parts:
            part_lines = part.splitlines() or [""]
            # Nested blocks already indent their own continuation lines.
            lines.append("\n".join([inner_indent + part_lines[0]] + part_lines[1:]))

        return f"{open_char}\n" + ",\n".join(lines) + f"\n{outer_indent}{close_char}"

    def _pformat_view(self, obj, level):
        if not obj.notes:
            return obj.display()
        indent = self._indent_char * (level + 1)
        sections = []
        for note, rendered in zip(obj.notes, obj.rendered_contents):
            header = f"{indent}--- {note.path or note.id}"
            body = "\n".join(indent + line for line in rendered.split("\n"))
            sections.append(f"{header}\n{body}")
        count = len(obj.notes)
        noun = "note" if count == 1 else "notes"
        return f"view ({count} {noun})\n" + "\n".join(sections)
