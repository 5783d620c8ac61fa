import asyncio
import sys
from pathlib import Path

from mindl.mindl_analyzers import DailyTimeTrigger, DateTrigger, DateTimeTrigger
from mindl.mindl_runtime import DirectiveRunner
from mindl.mindl_printer import Printer
from mindl.mindl_values import ButtonValue, ScheduleValue

# A basic awaitable input prompt.
async def ainput(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    sys.stdout.write(prompt)
    sys.stdout.flush()
    return await loop.run_in_executor(None, sys.stdin.readline)

def _as_directive(line: str) -> str:
    """Bare expressions are wrapped so `add(1, 2)` works like `[add(1, 2)]`."""
    if line.startswith("[") and line.endswith("]"):
        return line
    return f"[{line}]"

def _describe_trigger(trigger) -> str:
    match trigger:
        case DailyTimeTrigger(trigger_time=t):
            return f"daily at {t:%H:%M}"
        case DateTrigger(trigger_date=d):
            return f"on {d.isoformat()}"
        case DateTimeTrigger(trigger_datetime=dt):
            return f"at {dt:%Y-%m-%d %H:%M}"
    return repr(trigger)

def _print_mutations(result):
    for mutation in result.mutations:
        note = mutation.updated_note
        print(f"~ {mutation.mutation_type.value}: {note.path or note.id}")

async def run_note_file(file_path: str):
    """Render a note file with its directives evaluated and exit with appropriate status."""
    runner = DirectiveRunner()
    p = Path(file_path)
    try:
        content = p.read_text(encoding="utf-8")
    except FileNotFoundError:
        print(f"Error: file not found: {file_path}", file=sys.stderr)
        raise SystemExit(1)
    note = runner.note_operations.create_note(p.stem, content)
    results = runner.run_note(note)
    print(runner.display_note(note, results))
    if any(r.error is not None for r in results.values()):
        raise SystemExit(1)

async def main():
    """Render a note file when provided, otherwise start the interactive REPL."""
    if len(sys.argv) > 1:
        arg = sys.argv[1]
        if not arg.startswith("-"):
            await run_note_file(arg)
            return

    print("Mindl REPL v0.1")
    print("Type 'exit' or press Ctrl+D to quit.")

    runner = DirectiveRunner()
    printer = Printer()
    last_action = None

    while True:
        try:
            raw = await ainput(">> ")
            if raw == "":
                raise EOFError
            line = raw.strip()

            if not line:
                continue
            if line == "exit":
                break
            if line == ":notes":
                for note in runner.note_operations.all_notes():
                    print(f"{note.id}  {note.path}")
                continue
            if line == ":trigger":
                if last_action is None:
                    print("Error: no button or schedule to trigger", file=sys.stderr)
                    continue
                result = runner.trigger(last_action)
            else:
                result = runner.run(_as_directive(line))

            if result.status == 'error':
                print(result.format_error(), file=sys.stderr)
                _print_mutations(result)
                continue

            _print_mutations(result)
            if isinstance(result.value, (ButtonValue, ScheduleValue)):
                last_action = result.value
            if result.refresh is not None:
                if result.refresh.success:
                    times = ", ".join(_describe_trigger(t) for t in result.refresh.triggers)
                    print(f"refresh triggers: {times or 'none'}")
                else:
                    print(f"Error: {result.refresh.error}", file=sys.stderr)
            if result.value is not None:
                print(printer.pformat(result.value))

        except EOFError:
            print("\nExiting.")
            break
        except Exception as e:
            print(f"Error: {e}", file=sys.stderr)

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nExiting.")
