"""
Cancellable, time-sliced scheduled tasks.

Stands in for animation frames and UI timers so preview behaviour can be
driven either by a running asyncio loop or by an explicit clock in tests.

Design:
- A ScheduledTask owns a `step(elapsed_ms) -> bool` callback; True asks for
  another frame, False finishes the task.
- Cancellation takes effect at the next frame boundary; a cancelled task
  never calls `step` again.
- Scheduling a task under a name that is already active cancels the old one
  (a new scroll replaces the running scroll).
- With a running event loop, tasks are driven by asyncio.sleep between
  frames. Without one they stay PENDING/RUNNING until `advance(now_ms)`.

Usage:
    scheduler = Scheduler(frame_interval_ms=16)
    scheduler.call_later("flash", 2000, lambda: print("done"))
    scheduler.advance(2000)   # manual driver
"""
from typing import Callable, Dict, List, Optional
from enum import Enum
import asyncio
import logging
import time


logger = logging.getLogger("threadline.scheduler")

StepFn = Callable[[float], bool]


def monotonic_ms() -> float:
    """Default clock in milliseconds."""
    return time.monotonic() * 1000.0


class TaskState(str, Enum):
    PENDING = "pending"        # waiting out its delay
    RUNNING = "running"
    FINISHED = "finished"
    CANCELLED = "cancelled"


class ScheduledTask:
    """One cancellable frame-driven activity."""

    def __init__(
        self,
        name: str,
        step: StepFn,
        delay_ms: float = 0.0,
        frame_interval_ms: float = 16.0,
        clock: Callable[[], float] = monotonic_ms,
    ):
        self.name = name
        self.delay_ms = delay_ms
        self.frame_interval_ms = frame_interval_ms
        self.state = TaskState.PENDING
        self.frames = 0
        self._step = step
        self._clock = clock
        self._started_at: Optional[float] = None
        self._aio_task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self.state in (TaskState.PENDING, TaskState.RUNNING)

    def start(self, now: Optional[float] = None) -> "ScheduledTask":
        """Record the start time; the first frame runs after `delay_ms`."""
        self._started_at = self._clock() if now is None else now
        return self

    def tick(self, now: float) -> bool:
        """
        Run one frame if due.

        Returns:
            True while the task still wants frames
        """
        if not self.active:
            return False
        if self._started_at is None:
            self._started_at = now

        due = self._started_at + self.delay_ms
        if now < due:
            return True

        self.state = TaskState.RUNNING
        self.frames += 1
        try:
            more = bool(self._step(now - due))
        except Exception as e:
            logger.error(f"Scheduled task {self.name} failed: {e}", exc_info=True)
            more = False

        if not more and self.state == TaskState.RUNNING:
            self.state = TaskState.FINISHED
        return self.active

    def cancel(self) -> bool:
        """Cancel at the next frame boundary. Returns False if already done."""
        if not self.active:
            return False
        self.state = TaskState.CANCELLED
        if self._aio_task is not None and not self._aio_task.done():
            self._aio_task.cancel()
        logger.debug(f"Cancelled scheduled task {self.name}")
        return True

    async def run(self) -> None:
        """Drive the task from an asyncio loop until it finishes or is cancelled."""
        if self._started_at is None:
            self.start()
        try:
            while self.tick(self._clock()):
                await asyncio.sleep(self.frame_interval_ms / 1000.0)
        except asyncio.CancelledError:
            self.state = TaskState.CANCELLED
            raise

    def attach(self, aio_task: asyncio.Task) -> None:
        self._aio_task = aio_task

    def __repr__(self) -> str:
        return f"ScheduledTask({self.name!r}, state={self.state.value}, frames={self.frames})"


class Scheduler:
    """
    Named registry of scheduled tasks.

    Thread Safety:
        NOT thread-safe; runs on the UI loop.
    """

    def __init__(
        self,
        frame_interval_ms: float = 16.0,
        clock: Callable[[], float] = monotonic_ms,
    ):
        self.frame_interval_ms = frame_interval_ms
        self._clock = clock
        self._tasks: Dict[str, ScheduledTask] = {}

    def schedule(self, name: str, step: StepFn, delay_ms: float = 0.0) -> ScheduledTask:
        """
        Start a frame task, replacing any active task with the same name.
        """
        self.cancel(name)
        task = ScheduledTask(
            name,
            step,
            delay_ms=delay_ms,
            frame_interval_ms=self.frame_interval_ms,
            clock=self._clock,
        ).start()
        self._tasks[name] = task

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: the caller drives frames through advance()
            return task
        task.attach(loop.create_task(task.run()))
        return task

    def call_later(self, name: str, delay_ms: float, callback: Callable[[], None]) -> ScheduledTask:
        """One-shot timer."""
        def step(_elapsed: float) -> bool:
            callback()
            return False

        return self.schedule(name, step, delay_ms=delay_ms)

    def get(self, name: str) -> Optional[ScheduledTask]:
        return self._tasks.get(name)

    def is_active(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and task.active

    def cancel(self, name: str) -> bool:
        task = self._tasks.pop(name, None)
        return task.cancel() if task is not None else False

    def cancel_all(self) -> int:
        """Cancel everything. Returns the number of tasks actually cancelled."""
        cancelled = sum(1 for task in list(self._tasks.values()) if task.cancel())
        self._tasks.clear()
        return cancelled

    def advance(self, now: float) -> List[str]:
        """
        Manual driver: run one frame of every due task at time `now`.

        Returns:
            Names of tasks still active afterwards
        """
        for name, task in list(self._tasks.items()):
            if not task.tick(now) and self._tasks.get(name) is task:
                del self._tasks[name]
        return [name for name, task in self._tasks.items() if task.active]


# =============================================================================
# SCROLL ANIMATION
# =============================================================================

def ease_out_cubic(t: float) -> float:
    return 1 - (1 - t) ** 3


def scroll_duration(distance: float, min_ms: float = 300.0, max_ms: float = 800.0) -> float:
    """Longer scrolls take longer, within [min_ms, max_ms]."""
    return min(max(abs(distance) * 0.5, min_ms), max_ms)


class Viewport:
    """
    Minimal model of the preview's scroll container.

    Rows have a uniform height; good enough to compute where a message sits
    and to observe the animation without a rendering surface.
    """

    def __init__(self, height: float = 600.0, row_height: float = 72.0, scroll_top: float = 0.0):
        self.height = height
        self.row_height = row_height
        self.scroll_top = scroll_top

    def target_for(self, row_index: int) -> float:
        """scroll_top that centers the given row."""
        top = row_index * self.row_height - self.height / 2 + self.row_height / 2
        return max(top, 0.0)


def make_scroll_step(
    viewport: Viewport,
    target: float,
    min_ms: float = 300.0,
    max_ms: float = 800.0,
) -> StepFn:
    """Build a frame step that eases viewport.scroll_top to target."""
    start = viewport.scroll_top
    distance = target - start
    duration = scroll_duration(distance, min_ms, max_ms)

    def step(elapsed: float) -> bool:
        progress = min(elapsed / duration, 1.0)
        viewport.scroll_top = start + distance * ease_out_cubic(progress)
        return progress < 1.0

    return step
