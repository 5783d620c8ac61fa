from datetime import date, time

import pytest
from mindl.mindl_notes import Note
from mindl.mindl_printer import Printer
from mindl.mindl_values import (
    UNDEFINED, TRUE, DateValue, ListValue, NoteValue, NumberValue, PatternValue,
    StringValue, TimeValue, ViewValue,
)


@pytest.fixture
def printer():
    return Printer()


@pytest.mark.parametrize("value, expected", [
    (UNDEFINED, "undefined"),
    (NumberValue(3.0), "3"),
    (NumberValue(2.5), "2.5"),
    (TRUE, "true"),
    (StringValue('say "hi"\n'), '"say \\"hi\\"\\n"'),
    (DateValue(date(2026, 1, 15)), "date 2026-01-15"),
    (TimeValue(time(9, 30)), "time 09:30:00"),
    (PatternValue(r"\d{4}"), r"pattern(\d{4})"),
])
def test_scalars(printer, value, expected):
    assert printer.pformat(value) == expected


def test_note_label_falls_back_to_first_line_then_id(printer):
    assert printer.pformat(NoteValue(Note("n1", "inbox/todo"))) == "note(inbox/todo)"
    assert printer.pformat(NoteValue(Note("n2", "", "Title\nbody"))) == "note(Title)"
    assert printer.pformat(NoteValue(Note("n3"))) == "note(n3)"


def test_short_list_is_inline(printer):
    value = ListValue((NumberValue(1.0), StringValue("a"), ListValue(())))
    assert printer.pformat(value) == '[1, "a", []]'


def test_long_list_breaks_over_lines():
    value = ListValue(tuple(StringValue(s) for s in ("alpha", "beta", "gamma")))
    assert Printer(line_width=10).pformat(value) == '[\n  "alpha",\n  "beta",\n  "gamma"\n]'


def test_nested_block_indentation():
    inner = ListValue((StringValue("aaaa"), StringValue("bbbb")))
    value = ListValue((inner,))
    expected = '[\n  [\n    "aaaa",\n    "bbbb"\n  ]\n]'
    assert Printer(line_width=12).pformat(value) == expected


def test_view_sections(printer):
    view = ViewValue((Note("a", "inbox"), Note("b", "done")), ("one\ntwo", "three"))
    assert printer.pformat(view) == "view (2 notes)\n  --- inbox\n  one\n  two\n  --- done\n  three"


def test_empty_view(printer):
    assert printer.pformat(ViewValue()) == "[empty view]"


def test_unknown_objects_use_repr(printer):
    assert printer.pformat(42) == "42"
