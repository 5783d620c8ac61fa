"""
Refresh scheduler: remembers the triggers of every `refresh[...]` directive
and reports, through a callback, which directives are due for
re-evaluation. It never evaluates anything itself.
"""
import asyncio
import os
import sys
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from mindl.mindl_analyzers import RefreshAnalysis, TimeTrigger

DEFAULT_CHECK_INTERVAL = 60.0


def _interval_from_env() -> float:
    raw = os.environ.get("MINDL_REFRESH_INTERVAL")
    if raw is None:
        return DEFAULT_CHECK_INTERVAL
    try:
        value = float(raw)
    except ValueError:
        return DEFAULT_CHECK_INTERVAL
    return value if value > 0 else DEFAULT_CHECK_INTERVAL


def _dbg(*parts):
    if os.environ.get("MINDL_DEBUG"):
        print("[SCHED]", *parts, file=sys.stderr)


@dataclass
class RegisteredRefresh:
    key: str
    note_id: str
    triggers: Tuple[TimeTrigger, ...]
    last_check: datetime
    fired: Set[int] = field(default_factory=set)

    def is_exhausted(self, now: datetime) -> bool:
        """True once no trigger can fire again."""
        for index, trigger in enumerate(self.triggers):
            if trigger.is_recurring:
                return False
            if index not in self.fired and trigger.next_trigger_after(now) is not None:
                return False
        return True


class RefreshScheduler:
    def __init__(self, on_trigger: Callable[[str, str], None],
                 check_interval: Optional[float] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.on_trigger = on_trigger
        self.check_interval = check_interval if check_interval is not None else _interval_from_env()
        self._clock = clock or datetime.now
        self._registrations: Dict[str, RegisteredRefresh] = {}
        self._task: Optional[asyncio.Task] = None

    # --- Registration ---

    def register(self, key: str, note_id: str,
                 triggers: Iterable[TimeTrigger] | RefreshAnalysis,
                 now: Optional[datetime] = None) -> bool:
        """
        Track a directive's triggers. Replaces an earlier registration under
        the same key. A failed analysis or an empty trigger set registers
        nothing and returns False.
        """
        if isinstance(triggers, RefreshAnalysis):
            if not triggers.success:
                return False
            triggers = triggers.triggers
        triggers = tuple(triggers)
        if not triggers:
            self._registrations.pop(key, None)
            return False
        self._registrations[key] = RegisteredRefresh(key, note_id, triggers, now or self._clock())
        _dbg("register", key, "triggers:", len(triggers))
        return True

    def unregister(self, key: str):
        self._registrations.pop(key, None)

    def unregister_note(self, note_id: str):
        for key in [k for k, r in self._registrations.items() if r.note_id == note_id]:
            del self._registrations[key]

    def clear_all(self):
        self._registrations.clear()

    @property
    def registration_count(self) -> int:
        return len(self._registrations)

    def registered_keys(self) -> List[str]:
        return list(self._registrations)

    # --- Checking ---

    def check_triggers(self, now: Optional[datetime] = None) -> List[str]:
        """
        Fire every registration with a trigger in (last check, now]. Each
        registration fires at most once per check. Returns the fired keys.
        """
        now = now or self._clock()
        fired = []
        for registration in list(self._registrations.values()):
            due = False
            for index, trigger in enumerate(registration.triggers):
                if index in registration.fired:
                    continue
                upcoming = trigger.next_trigger_after(registration.last_check)
                if upcoming is not None and upcoming <= now:
                    due = True
                    if not trigger.is_recurring:
                        registration.fired.add(index)
            registration.last_check = now
            if due:
                fired.append((registration.key, registration.note_id))
            if registration.is_exhausted(now):
                _dbg("exhausted", registration.key)
                del self._registrations[registration.key]

        for key, note_id in fired:
            _dbg("fire", key)
            self.on_trigger(key, note_id)
        return [key for key, _ in fired]

    def next_trigger_time(self) -> Optional[datetime]:
        upcoming = []
        for registration in self._registrations.values():
            for index, trigger in enumerate(registration.triggers):
                if index in registration.fired:
                    continue
                moment = trigger.next_trigger_after(registration.last_check)
                if moment is not None:
                    upcoming.append(moment)
        return min(upcoming) if upcoming else None

    # --- Lifecycle ---

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self):
        while True:
            await asyncio.sleep(self.check_interval)
            try:
                self.check_triggers()
            except Exception as e:
                _dbg("check failed:", repr(e))

    def start(self):
        if self.is_running:
            return
        self._task = asyncio.create_task(self._run())

    async def stop(self):
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
