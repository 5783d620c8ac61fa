from datetime import datetime, time

from mindl.mindl_analyzers import DailyTimeTrigger
from mindl.mindl_notes import InMemoryNoteOperations, MutationType
from mindl.mindl_runtime import DirectiveRunner, ExecutionResult
from mindl.mindl_values import NumberValue, StringValue

NOW = datetime(2026, 1, 15, 10, 0)


def make_runner(*notes):
    ops = InMemoryNoteOperations()
    for path, content in notes:
        ops.create_note(path, content)
    return DirectiveRunner(ops, mocked_time=NOW)


def assert_error(result, prefix):
    assert result.status == 'error', f"Expected error, got {result.value!r}"
    assert result.error_message.startswith(prefix), result.error_message


# --- Run Tests ---

def test_run_success():
    result = make_runner().run("  [add(1, 2)]\n")
    assert result.status == 'success'
    assert result.value == NumberValue(3.0)
    assert result.refresh is None
    assert result.format_error() == ""


def test_run_sees_the_note_store():
    runner = make_runner(("inbox", "x"), ("inbox/today", "y"))
    result = runner.run('[first(find(path: "inbox/today")).up.path]')
    assert result.value == StringValue("inbox")


def test_parse_error_has_a_caret():
    result = make_runner().run("[add(1, ]")
    assert_error(result, "ParseError: ")
    formatted = result.format_error().splitlines()
    assert formatted[0].endswith("(line 1, col %d)" % (result.error_position + 1))
    assert formatted[1] == "> 1 | [add(1, ]"
    assert formatted[2].index("^") == len("  1 | ") + result.error_position


def test_lex_error():
    assert_error(make_runner().run('["open]'), "LexError: ")


def test_validation_error_has_no_position():
    result = make_runner().run('[new(path: "x")]')
    assert_error(result, "ValidationError: new() requires explicit trigger")
    assert result.format_error() == result.error_message


def test_execution_error():
    result = make_runner().run("[div(1, 0)]")
    assert_error(result, "ExecutionError: Division by zero")


def test_refresh_analysis_is_reported():
    result = make_runner().run('[refresh[if(time.gt("09:00"), "open", "closed")]]')
    assert result.value == StringValue("open")
    assert result.refresh.success
    assert result.refresh.triggers == (DailyTimeTrigger(time(9, 0)),)


def test_failed_refresh_analysis_still_runs():
    result = make_runner().run("[refresh[add(1, 2)]]")
    assert result.status == 'success'
    assert not result.refresh.success


def test_once_cache_lives_on_the_runner():
    runner = make_runner()
    first = runner.run("[once[time]]")
    runner.mocked_time = datetime(2026, 1, 15, 18, 0)
    assert runner.run("[once[time]]").value == first.value


# --- Trigger Tests ---

def test_button_action_runs_on_trigger():
    runner = make_runner()
    log = runner.note_operations.create_note("log", "")
    runner.current_note = log
    button = runner.run('[button("Log", [.append("hi")])]')
    assert button.mutations == []
    result = runner.trigger(button.value)
    assert result.status == 'success'
    assert [m.mutation_type for m in result.mutations] == [MutationType.CONTENT_APPENDED]
    assert runner.note_operations.get_note_by_id(log.id).content == "hi"


def test_only_actions_can_be_triggered():
    result = make_runner().trigger(NumberValue(1.0))
    assert result == ExecutionResult('error', error_message="Cannot trigger a number")


# --- Note Tests ---

def test_run_note_and_display():
    runner = make_runner()
    note = runner.note_operations.create_note("today", "Sum: [add(1, 2)]\n[date] and [once[date]]")
    results = runner.run_note(note)
    assert sorted(results) == ["0:5", "1:0", "1:11"]
    assert results["1:0"].error.startswith("Validation error: ")
    assert runner.display_note(note, results) == "Sum: 3\n[date] and 2026-01-15"


def test_unexpected_errors_become_internal_errors(monkeypatch):
    runner = make_runner()

    def broken(self, expr, env):
        raise RuntimeError("boom")

    monkeypatch.setattr("mindl.mindl_executor.Executor.evaluate", broken)
    assert_error(runner.run("[add(1, 2)]"), "InternalError: boom")
