"""
In-process deadline notifications for a running client session.

Mirrors the server dispatch job for a single user: each open task with a
deadline gets one timer, and firing shows a local notification. Nothing is
persisted; the "already notified" set lives for the session only.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional, Protocol, Set, Tuple

from core.due import deadline_instant
from core.time_utils import get_current_time
from models.todo import Todo

logger = logging.getLogger(__name__)

# Largest delay a platform timer can hold (signed 32-bit milliseconds, ~24.8 days)
MAX_TIMER_DELAY_MS = 2_147_483_647
RESYNC_INTERVAL_SECONDS = 6 * 60 * 60

@dataclass
class LocalNotification:
    task_id: str
    title: str
    body: str
    tag: str
    data: Dict[str, Any] = field(default_factory=dict)
    require_interaction: bool = True

class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...

# (delay_seconds, callback) -> handle, the shape of loop.call_later
Timer = Callable[[float, Callable[[], None]], TimerHandle]
# Shows a notification; the second argument is invoked when the user clicks it
Notifier = Callable[[LocalNotification, Callable[[], None]], None]

def _event_loop_timer(delay: float, callback: Callable[[], None]) -> TimerHandle:
    return asyncio.get_running_loop().call_later(delay, callback)

def build_notification(todo: Todo) -> LocalNotification:
    parts = []
    if todo.deadline is not None and todo.deadline.time:
        parts.append(f"Due at {todo.deadline.time}")
    if todo.list_id is not None:
        parts.append("Tap to view task")
    return LocalNotification(
        task_id=todo.id,
        title=todo.text,
        body=" • ".join(parts) or "Task is due.",
        tag=f"todo-deadline-{todo.id}",
        data={"taskId": todo.id},
    )

class ClientDeadlineScheduler:
    """
    Keeps exactly one pending timer per open task with a deadline.

    `sync` is called with the full task list every time it changes. A task whose
    deadline moved has its timer cancelled and replaced, never duplicated, and a
    deadline instant is shown at most once per session.
    """

    def __init__(
        self,
        notifier: Notifier,
        on_open: Callable[[str], None],
        background: Optional[Notifier] = None,
        timer: Timer = _event_loop_timer,
        clock: Callable[[], datetime] = get_current_time,
        max_delay_ms: int = MAX_TIMER_DELAY_MS,
        resync_interval: float = RESYNC_INTERVAL_SECONDS,
    ):
        self.notifier = notifier
        self.on_open = on_open
        self.background = background
        self.timer = timer
        self.clock = clock
        self.max_delay_ms = max_delay_ms
        self.resync_interval = resync_interval

        self._scheduled: Dict[str, Tuple[TimerHandle, datetime]] = {}
        self._notified: Set[Tuple[str, datetime]] = set()
        self._tasks: list = []
        self._resync: Optional[TimerHandle] = None

    @property
    def scheduled(self) -> Dict[str, datetime]:
        return {task_id: instant for task_id, (_, instant) in self._scheduled.items()}

    def sync(self, tasks: Iterable[Todo]) -> None:
        self._tasks = list(tasks)
        active = {todo.id: todo for todo in self._tasks if not todo.completed and todo.deadline is not None}

        for task_id in list(self._scheduled):
            if task_id not in active:
                handle, _ = self._scheduled.pop(task_id)
                handle.cancel()
        self._notified = {key for key in self._notified if key[0] in active}

        now = self.clock()
        deferred = False
        for task_id, todo in active.items():
            instant = deadline_instant(todo.deadline.date, todo.deadline.time)
            if instant is None:
                continue

            if instant <= now:
                # A timer may still be pending for this instant if the clock jumped
                self._cancel(task_id)
                if (task_id, instant) not in self._notified:
                    self._notified.add((task_id, instant))
                    self._show(todo)
                continue

            existing = self._scheduled.get(task_id)
            if existing is not None:
                if existing[1] == instant:
                    continue
                self._cancel(task_id)

            delay_ms = (instant - now).total_seconds() * 1000
            if delay_ms > self.max_delay_ms:
                deferred = True
                continue

            handle = self.timer(delay_ms / 1000, lambda todo=todo, instant=instant: self._fire(todo, instant))
            self._scheduled[task_id] = (handle, instant)

        self._schedule_resync(deferred)

    def close(self) -> None:
        for handle, _ in self._scheduled.values():
            handle.cancel()
        self._scheduled.clear()
        if self._resync is not None:
            self._resync.cancel()
            self._resync = None

    def _cancel(self, task_id: str) -> None:
        entry = self._scheduled.pop(task_id, None)
        if entry is not None:
            entry[0].cancel()

    def _schedule_resync(self, needed: bool) -> None:
        if self._resync is not None:
            self._resync.cancel()
            self._resync = None
        if needed:
            self._resync = self.timer(self.resync_interval, self._run_resync)

    def _run_resync(self) -> None:
        self._resync = None
        self.sync(self._tasks)

    def _fire(self, todo: Todo, instant: datetime) -> None:
        self._scheduled.pop(todo.id, None)
        if (todo.id, instant) in self._notified:
            return
        self._notified.add((todo.id, instant))
        self._show(todo)

    def _show(self, todo: Todo) -> None:
        notification = build_notification(todo)

        def on_click():
            self.on_open(todo.id)

        if self.background is not None:
            try:
                self.background(notification, on_click)
                return
            except Exception:
                logger.warning(f"Background notification failed for task {todo.id}, showing it directly", exc_info=True)
        self.notifier(notification, on_click)
