from datetime import date, datetime, time

import pytest
from mindl.mindl_analyzers import (
    COMPUTED_OPERAND_ERROR, NO_COMPARISONS_ERROR, BareMutation, BareTimeValue,
    DailyTimeTrigger, DateTimeTrigger, DateTrigger, DynamicCallAnalyzer, IdempotencyAnalyzer,
    MutationValidator, RefreshTriggerAnalyzer, contains_mutations, contains_unwrapped_time_values,
    find_refresh_expr,
)
from mindl.mindl_environment import Environment
from mindl.mindl_parser import parse_directive


def expr(source):
    return parse_directive(source).expression


def validate(source):
    return MutationValidator().validate(expr(source))


def refresh_triggers(source):
    env = Environment.create(mocked_time=datetime(2026, 1, 15, 12, 0))
    return RefreshTriggerAnalyzer().analyze(find_refresh_expr(expr(source)), env)


# --- Dynamic Call Tests ---

@pytest.mark.parametrize("source, dynamic", [
    ("[date]", True),
    ("[add(1, 2)]", False),
    ('[time.gt("09:00")]', True),
    ("[once[date]]", False),
    ("[refresh[add(1, 2)]]", True),
    ("[string(datetime)]", True),
])
def test_dynamic_calls(source, dynamic):
    assert DynamicCallAnalyzer.contains_dynamic_calls(expr(source)) is dynamic


# --- Idempotency Tests ---

def test_new_is_not_idempotent():
    result = IdempotencyAnalyzer().analyze(expr('[new(path: "x")]'))
    assert not result.is_idempotent
    assert result.non_idempotent_reason.startswith("new() creates new data")


def test_append_is_not_idempotent():
    result = IdempotencyAnalyzer().analyze(expr('[.append("x")]'))
    assert not result.is_idempotent
    assert result.non_idempotent_reason.startswith(".append() modifies data")


@pytest.mark.parametrize("source", [
    "[add(1, 2)]",
    '[maybe_new(path: "x")]',
    '[once[new(path: "x")]]',
])
def test_idempotent_expressions(source):
    result = IdempotencyAnalyzer().analyze(expr(source))
    assert result.is_idempotent
    assert result.non_idempotent_reason is None


# --- Mutation Validator Tests ---

@pytest.mark.parametrize("source, kind", [
    ('[new(path: "x")]', "new()"),
    ('[maybe_new(path: "x")]', "maybe_new()"),
    ('[.append("x")]', ".append()"),
    ('[.path: "x"]', "Setting .path"),
    ('[f: [new(path: "x")]; f(1)]', "new()"),
])
def test_bare_mutations_are_rejected(source, kind):
    result = validate(source)
    assert isinstance(result, BareMutation)
    assert result.mutation_type == kind
    assert result.error_message() == f"{kind} requires explicit trigger. Wrap in button() or schedule() to execute."


@pytest.mark.parametrize("source, name", [
    ("[date]", "date()"),
    ('[time.gt("09:00")]', "time()"),
    ('[button(string(datetime), [1])]', "datetime()"),
])
def test_bare_time_values_are_rejected(source, name):
    result = validate(source)
    assert isinstance(result, BareTimeValue)
    assert result.function_name == name
    assert "Wrap in once[...] to cache or refresh[...] to update periodically." in result.error_message()


@pytest.mark.parametrize("source", [
    "[once[date]]",
    '[refresh[if(time.gt("09:00"), 1, 0)]]',
    '[button("Add", [new(path: "x")])]',
    '[button("Log", [.append(time)])]',
    '[schedule(daily, [.path: "archived"], at: "09:00")]',
    "[add(1, 2)]",
])
def test_wrapped_or_pure_expressions_are_valid(source):
    result = validate(source)
    assert result.is_valid()
    assert result.error_message() is None


def test_contains_helpers():
    assert contains_mutations(expr('[button("a", [1])]'))
    assert not contains_mutations(expr("[add(1, 2)]"))
    assert contains_unwrapped_time_values(expr("[string(date)]"))
    assert not contains_unwrapped_time_values(expr('[button("a", [date])]'))
    assert not contains_unwrapped_time_values(expr("[once[date]]"))


# --- Trigger Tests ---

def test_daily_trigger_schedule():
    trigger = DailyTimeTrigger(time(9, 0))
    assert trigger.is_recurring
    assert trigger.next_trigger_after(datetime(2026, 1, 15, 8, 0)) == datetime(2026, 1, 15, 9, 0)
    assert trigger.next_trigger_after(datetime(2026, 1, 15, 9, 0)) == datetime(2026, 1, 16, 9, 0)
    assert trigger.should_trigger_at(datetime(2026, 1, 20, 9, 0))


def test_one_shot_triggers():
    on_date = DateTrigger(date(2026, 3, 1))
    assert not on_date.is_recurring
    assert on_date.next_trigger_after(datetime(2026, 2, 28, 12, 0)) == datetime(2026, 3, 1, 0, 0)
    assert on_date.next_trigger_after(datetime(2026, 3, 1, 0, 0)) is None
    at_moment = DateTimeTrigger(datetime(2026, 3, 1, 8, 30))
    assert at_moment.next_trigger_after(datetime(2026, 3, 1, 8, 0)) == datetime(2026, 3, 1, 8, 30)
    assert at_moment.should_trigger_at(datetime(2026, 3, 1, 8, 30))


# --- Refresh Analysis Tests ---

def test_business_hours_produce_two_triggers():
    analysis = refresh_triggers('[refresh[if(time.gt("09:00").and(time.lt("17:00")), 1, 0)]]')
    assert analysis.success
    assert analysis.triggers == (DailyTimeTrigger(time(9, 0)), DailyTimeTrigger(time(17, 0)))


def test_function_form_comparison_with_literal_first():
    analysis = refresh_triggers('[refresh[if(lt("12:30", time), "afternoon", "morning")]]')
    assert analysis.triggers == (DailyTimeTrigger(time(12, 30)),)


def test_variable_holding_a_literal():
    analysis = refresh_triggers('[refresh[start: "08:15"; if(time.gte(start), "open", "closed")]]')
    assert analysis.triggers == (DailyTimeTrigger(time(8, 15)),)


def test_plus_offset_is_subtracted():
    analysis = refresh_triggers('[refresh[if(time.plus(hours: 1).gt("10:00"), 1, 0)]]')
    assert analysis.triggers == (DailyTimeTrigger(time(9, 0)),)


def test_date_comparison_gives_date_trigger():
    analysis = refresh_triggers('[refresh[if(date.gte("2026-03-01"), "spring", "winter")]]')
    assert analysis.triggers == (DateTrigger(date(2026, 3, 1)),)


def test_comparison_that_never_changes_is_dropped():
    analysis = refresh_triggers('[refresh[if(or(time.gt("09:00"), eq(1, 1)), 1, 0)]]')
    assert analysis.success
    assert analysis.triggers == ()


def test_refresh_without_comparisons_fails():
    analysis = refresh_triggers("[refresh[add(1, 2)]]")
    assert not analysis.success
    assert analysis.error == NO_COMPARISONS_ERROR


def test_computed_operand_fails():
    analysis = refresh_triggers('[refresh[if(time.gt(string("09", ":00")), 1, 0)]]')
    assert not analysis.success
    assert analysis.error == COMPUTED_OPERAND_ERROR


def test_find_refresh_expr():
    assert find_refresh_expr(expr("[add(1, 2)]")) is None
    assert find_refresh_expr(expr('[x: refresh[time.gt("09:00")]]')) is not None


def test_evaluation_errors_do_not_abort_trigger_analysis(monkeypatch):
    def broken(self, expr, env):
        raise RuntimeError("unexpected")

    monkeypatch.setattr("mindl.mindl_executor.Executor.evaluate", broken)
    analysis = refresh_triggers('[refresh[if(time.gt("09:00"), 1, 0)]]')
    assert analysis.success
    assert analysis.triggers == ()
