import importlib.util
import sys
from pathlib import Path
import uuid
import pytest

def _load_repl_module():
    """Dynamically load the top-level mindl.py (REPL) as a module with a unique name."""
    repl_path = Path(__file__).resolve().parents[1] / "mindl.py"
    mod_name = f"mindl_repl_for_test_{uuid.uuid4().hex}"
    spec = importlib.util.spec_from_file_location(mod_name, str(repl_path))
    mod = importlib.util.module_from_spec(spec)
    sys.modules[mod_name] = mod
    assert spec.loader is not None
    spec.loader.exec_module(mod)
    return mod

def _feed(monkeypatch, repl, *lines):
    monkeypatch.setattr(sys, "argv", ["mindl.py"])
    remaining = iter(lines)

    async def fake_ainput(prompt: str) -> str:
        return next(remaining)
    monkeypatch.setattr(repl, "ainput", fake_ainput)

@pytest.mark.asyncio
async def test_repl_exit_immediately(monkeypatch, capsys):
    repl = _load_repl_module()
    _feed(monkeypatch, repl, "exit")

    await repl.main()
    out = capsys.readouterr().out
    assert "Mindl REPL v0.1" in out
    assert "Type 'exit' or press Ctrl+D to quit." in out

@pytest.mark.asyncio
async def test_repl_prints_values(monkeypatch, capsys):
    repl = _load_repl_module()
    _feed(monkeypatch, repl, "[add(1, 2)]", "mul(2, 3)", '"hi"', "exit")

    await repl.main()
    out, err = capsys.readouterr()
    assert "\n3\n" in out
    assert "\n6\n" in out
    # Strings are quoted by the printer
    assert '\n"hi"\n' in out
    assert err == ""

@pytest.mark.asyncio
async def test_repl_errors_print_to_stderr(monkeypatch, capsys):
    repl = _load_repl_module()
    _feed(monkeypatch, repl, "div(1, 0)", "add(1,", "date", "exit")

    await repl.main()
    out, err = capsys.readouterr()
    assert "Mindl REPL v0.1" in out
    assert "ExecutionError: Division by zero" in err
    assert "ParseError:" in err
    assert "^" in err
    assert "ValidationError: date() returns a time value that changes." in err

@pytest.mark.asyncio
async def test_repl_reports_refresh_triggers(monkeypatch, capsys):
    repl = _load_repl_module()
    _feed(monkeypatch, repl, 'refresh[if(time.gt("09:00"), "open", "closed")]', "exit")

    await repl.main()
    out = capsys.readouterr().out
    assert "refresh triggers: daily at 09:00" in out

@pytest.mark.asyncio
async def test_repl_triggers_last_button(monkeypatch, capsys):
    repl = _load_repl_module()
    _feed(monkeypatch, repl,
          ":trigger",
          'button("Add", [new(path: "log/entry")])',
          ":trigger",
          ":notes",
          "exit")

    await repl.main()
    out, err = capsys.readouterr()
    assert "no button or schedule to trigger" in err
    assert "[Button: Add]" in out
    assert "log/entry" in out

@pytest.mark.asyncio
async def test_repl_eof_quits(monkeypatch, capsys):
    repl = _load_repl_module()
    monkeypatch.setattr(sys, "argv", ["mindl.py"])

    async def fake_ainput(prompt: str) -> str:
        raise EOFError
    monkeypatch.setattr(repl, "ainput", fake_ainput)

    await repl.main()
    out = capsys.readouterr().out
    assert "Mindl REPL v0.1" in out
    assert "Exiting." in out

@pytest.mark.asyncio
async def test_note_file_is_rendered(monkeypatch, capsys, tmp_path):
    repl = _load_repl_module()
    note_file = tmp_path / "today.md"
    note_file.write_text("Sum: [add(1, 2)]\nplain line\n", encoding="utf-8")
    monkeypatch.setattr(sys, "argv", ["mindl.py", str(note_file)])

    await repl.main()
    out = capsys.readouterr().out
    assert "Sum: 3\nplain line\n" in out
    assert "Mindl REPL" not in out

@pytest.mark.asyncio
async def test_note_file_with_errors_exits_nonzero(monkeypatch, capsys, tmp_path):
    repl = _load_repl_module()
    note_file = tmp_path / "bad.md"
    note_file.write_text("[div(1, 0)]", encoding="utf-8")
    monkeypatch.setattr(sys, "argv", ["mindl.py", str(note_file)])

    with pytest.raises(SystemExit) as exc:
        await repl.main()
    assert exc.value.code == 1

@pytest.mark.asyncio
async def test_missing_note_file(monkeypatch, capsys):
    repl = _load_repl_module()
    monkeypatch.setattr(sys, "argv", ["mindl.py", "/no/such/note.md"])

    with pytest.raises(SystemExit):
        await repl.main()
    assert "file not found" in capsys.readouterr().err
