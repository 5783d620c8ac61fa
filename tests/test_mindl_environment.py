from datetime import datetime

from mindl.mindl_environment import Environment, InMemoryOnceCache
from mindl.mindl_notes import MutationType, Note, NoteMutation
from mindl.mindl_values import NumberValue, StringValue


NOTE = Note("n1", "inbox")


# --- Scope Tests ---

def test_child_sees_parent_bindings_and_shadows_them():
    root = Environment.create()
    root.define("x", NumberValue(1.0))
    child = root.child()
    assert child.get("x") == NumberValue(1.0)
    child.define("x", StringValue("shadow"))
    assert child.get("x") == StringValue("shadow")
    assert root.get("x") == NumberValue(1.0)


def test_missing_variable_is_none():
    assert Environment.create().get("nope") is None


def test_capture_returns_live_environment():
    env = Environment.create()
    captured = env.capture()
    env.define("late", NumberValue(2.0))
    assert captured.get("late") == NumberValue(2.0)


# --- Context Tests ---

def test_context_is_inherited():
    env = Environment.create(notes=[NOTE], current_note=NOTE)
    child = env.child().child()
    assert child.get_current_note() == NOTE
    assert child.get_notes() == (NOTE,)
    assert child.get_note_operations() is None


def test_for_note_changes_current_note_only_in_the_new_scope():
    env = Environment.create(current_note=NOTE)
    other = Note("n2", "other")
    scoped = env.for_note(other)
    assert scoped.get_current_note() == other
    assert env.get_current_note() == NOTE


def test_mocked_time():
    moment = datetime(2026, 1, 15, 9, 0)
    env = Environment.create(mocked_time=moment)
    assert env.now() == moment
    assert env.with_mocked_time(datetime(2026, 1, 16)).now() == datetime(2026, 1, 16)
    assert env.now() == moment


def test_once_cache_is_shared_by_scopes():
    cache = InMemoryOnceCache()
    env = Environment.create(once_cache=cache)
    env.child().get_or_create_once_cache().put("k", NumberValue(1.0))
    assert cache.get("k") == NumberValue(1.0)
    assert cache.contains("k")
    assert not cache.contains("other")


# --- View Stack Tests ---

def test_view_stack_is_scoped():
    env = Environment.create()
    inner = env.push_view_stack("a").push_view_stack("b")
    assert inner.is_in_view_stack("a")
    assert inner.view_stack_path() == ("a", "b")
    assert not env.is_in_view_stack("a")


# --- Mutation Log Tests ---

def test_mutations_are_collected_at_the_root():
    env = Environment.create()
    deep = env.child().push_view_stack("x").child()
    mutation = NoteMutation("n1", NOTE, MutationType.PATH_CHANGED)
    deep.register_mutation(mutation)
    assert env.mutations() == [mutation]
    assert deep.mutations() == [mutation]
    env.clear_mutations()
    assert deep.mutations() == []
