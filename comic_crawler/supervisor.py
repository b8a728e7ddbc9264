"""
Worker supervision.

Spawns one isolated worker per category, routes their messages, restarts
failed workers with exponential backoff and health-checks silent ones.
"""

import logging
import multiprocessing
import queue
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .config import SupervisorConfig
from .messages import (
    Command,
    ErrorMessage,
    HealthMessage,
    LogMessage,
    ShutdownAck,
    StatusMessage,
)
from .worker import worker_main

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    """Lifecycle of one category worker."""
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"
    TERMINATED = "terminated"


ACTIVE_STATES = (WorkerState.STARTING, WorkerState.RUNNING)


def compute_restart_delay(
    restart_count: int,
    base_delay: float = 60.0,
    multiplier: float = 2.0,
    max_delay: float = 600.0
) -> float:
    """
    Delay before the next restart of a worker.

    Args:
        restart_count: Restarts already scheduled since the last reset
        base_delay: Delay of the first restart in seconds
        multiplier: Growth factor per restart
        max_delay: Upper bound in seconds

    Returns:
        Delay in seconds, non-decreasing in restart_count
    """
    return min(base_delay * (multiplier ** max(restart_count, 0)), max_delay)


class ProcessWorkerHandle:
    """A worker running in its own process, with a private command queue."""

    def __init__(self, context, category: str, settings_data: dict, outbox: Any):
        self.category = category
        self.inbox = context.Queue()
        self.process = context.Process(
            target=worker_main,
            args=(category, settings_data, self.inbox, outbox),
            name=f"crawler-{category}",
        )

    def start(self):
        self.process.start()

    def send(self, command: Command):
        self.inbox.put(command.value)

    def is_alive(self) -> bool:
        return self.process.is_alive()

    @property
    def exitcode(self) -> Optional[int]:
        return self.process.exitcode

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid

    def join(self, timeout: Optional[float] = None):
        self.process.join(timeout)

    def terminate(self):
        self.process.terminate()

    def close(self):
        self.inbox.close()


class ProcessSpawner:
    """Creates ProcessWorkerHandle instances on a spawn context."""

    def __init__(self, settings_data: dict, context=None):
        self.context = context or multiprocessing.get_context("spawn")
        self.settings_data = settings_data
        self.channel = self.context.Queue()

    def __call__(self, category: str) -> ProcessWorkerHandle:
        return ProcessWorkerHandle(self.context, category, self.settings_data, self.channel)


@dataclass
class WorkerSlot:
    """Supervisor-side record of one category."""
    category: str
    state: WorkerState = WorkerState.IDLE
    handle: Any = None
    restart_count: int = 0
    next_start_at: Optional[float] = None
    last_message_at: float = 0.0
    check_sent_at: Optional[float] = None
    acknowledged: bool = False
    last_error: Optional[str] = None
    last_status: Optional[str] = None
    stats: dict = field(default_factory=dict)
    health: dict = field(default_factory=dict)
    started_count: int = 0

    def to_dict(self) -> dict:
        return {
            'category': self.category,
            'state': self.state.value,
            'pid': getattr(self.handle, 'pid', None),
            'restart_count': self.restart_count,
            'next_start_at': self.next_start_at,
            'last_message_at': self.last_message_at,
            'last_error': self.last_error,
            'last_status': self.last_status,
            'stats': self.stats,
            'health': self.health,
            'started_count': self.started_count,
        }


class WorkerSupervisor:
    """Runs and supervises one worker per category."""

    def __init__(
        self,
        categories: List[str],
        spawner: Callable[[str], Any],
        channel: Any,
        config: Optional[SupervisorConfig] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize the supervisor.

        Args:
            categories: Categories to supervise, one worker each
            spawner: Callable returning an unstarted worker handle for a category
            channel: Queue on which workers send their messages
            config: SupervisorConfig instance, uses defaults if None
            clock: Monotonic clock in seconds
        """
        self.config = config or SupervisorConfig()
        self.spawner = spawner
        self.channel = channel
        self._clock = clock
        self.slots: Dict[str, WorkerSlot] = {c: WorkerSlot(category=c) for c in categories}
        self._stopping = False
        self._last_health_check = clock()

    @classmethod
    def with_processes(
        cls,
        categories: List[str],
        settings_data: dict,
        config: Optional[SupervisorConfig] = None
    ) -> "WorkerSupervisor":
        """Create a supervisor whose workers are spawned processes."""
        spawner = ProcessSpawner(settings_data)
        return cls(categories, spawner, spawner.channel, config)

    def _slot(self, category: str) -> WorkerSlot:
        if category not in self.slots:
            raise KeyError(f"Unknown category: {category}")
        return self.slots[category]

    # Lifecycle

    def start_all(self):
        """Start a worker for every idle category."""
        for category, slot in self.slots.items():
            if slot.state not in ACTIVE_STATES:
                self.start_worker(category)

    def start_worker(self, category: str) -> bool:
        """
        Spawn the worker of a category and send it the start command.

        Returns:
            True if the worker was started
        """
        slot = self._slot(category)
        if slot.handle is not None and slot.handle.is_alive():
            logger.warning("Worker %s is already running", category)
            return False

        now = self._clock()
        slot.state = WorkerState.STARTING
        slot.next_start_at = None
        slot.check_sent_at = None
        slot.acknowledged = False
        slot.last_message_at = now

        try:
            handle = self.spawner(category)
            handle.start()
        except OSError as e:
            logger.error("Could not spawn worker %s: %s", category, e)
            slot.handle = None
            self._handle_failure(slot, f"spawn failed: {e}")
            return False

        slot.handle = handle
        slot.started_count += 1
        logger.info("Started worker %s (pid %s)", category, getattr(handle, 'pid', None))

        if not self.send_command(category, Command.START):
            self._handle_failure(slot, "start command could not be delivered")
            return False
        return True

    def stop_worker(self, category: str, timeout: Optional[float] = None) -> bool:
        """
        Stop one worker, forcing termination after the timeout.

        Returns:
            True if the worker exited on its own
        """
        slot = self._slot(category)
        slot.next_start_at = None
        if slot.handle is None:
            if slot.state not in (WorkerState.COMPLETED, WorkerState.IDLE):
                slot.state = WorkerState.TERMINATED
            return True

        self.send_command(category, Command.STOP)
        graceful = self._join_or_terminate(slot, self.config.shutdown_timeout if timeout is None else timeout)
        slot.state = WorkerState.TERMINATED
        return graceful

    def _join_or_terminate(self, slot: WorkerSlot, timeout: float) -> bool:
        handle = slot.handle
        deadline = time.monotonic() + timeout
        # A child only exits once its queued messages are read
        while handle.is_alive():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            self._drain(min(remaining, 0.1))
            handle.join(0)
        graceful = not handle.is_alive()
        if not graceful:
            logger.warning("Worker %s did not exit within %.0fs, terminating", slot.category, timeout)
            handle.terminate()
            handle.join(1)
        self._release(slot)
        return graceful

    def _release(self, slot: WorkerSlot):
        if slot.handle is not None and hasattr(slot.handle, 'close'):
            slot.handle.close()
        slot.handle = None

    def send_command(self, category: str, command: Command) -> bool:
        """
        Deliver a command to a worker.

        Returns:
            False if the worker is gone or its queue is closed
        """
        slot = self._slot(category)
        if slot.handle is None:
            return False
        try:
            slot.handle.send(command)
            return True
        except (ValueError, OSError) as e:
            logger.error("Could not deliver %s to %s: %s", command.value, category, e)
            return False

    def reset(self, category: str):
        """Clear the restart counter and schedule of a category."""
        slot = self._slot(category)
        slot.restart_count = 0
        slot.next_start_at = None
        slot.last_error = None
        if slot.state not in ACTIVE_STATES:
            slot.state = WorkerState.IDLE
        logger.info("Reset worker state for %s", category)

    # Message routing

    def dispatch(self, message):
        """Route one upward message to its handler."""
        slot = self.slots.get(getattr(message, 'category', None))
        if slot is None:
            logger.warning("Message from unknown category dropped: %r", message)
            return

        slot.last_message_at = self._clock()
        slot.check_sent_at = None

        if isinstance(message, LogMessage):
            logging.getLogger(f"{__name__}.{slot.category}").log(message.level, "[%s] %s", slot.category, message.message)
        elif isinstance(message, StatusMessage):
            slot.last_status = message.status
            if message.stats:
                slot.stats = message.stats
            if slot.state == WorkerState.STARTING:
                slot.state = WorkerState.RUNNING
        elif isinstance(message, HealthMessage):
            slot.health = {
                'healthy': message.healthy,
                'phase': message.phase,
                'memory_mb': message.memory_mb,
                'at': message.timestamp,
            }
            if slot.state == WorkerState.STARTING:
                slot.state = WorkerState.RUNNING
        elif isinstance(message, ErrorMessage):
            slot.last_error = f"{message.error_type}: {message.message}"
            if slot.state in ACTIVE_STATES:
                self._handle_failure(slot, slot.last_error)
        elif isinstance(message, ShutdownAck):
            slot.acknowledged = True
        else:
            raise TypeError(f"Unhandled worker message: {type(message).__name__}")

    def _handle_failure(self, slot: WorkerSlot, reason: str):
        delay = compute_restart_delay(
            slot.restart_count,
            self.config.restart_base_delay,
            self.config.restart_multiplier,
            self.config.restart_max_delay,
        )
        slot.restart_count += 1
        slot.state = WorkerState.ERROR
        slot.last_error = reason
        if not self._stopping:
            slot.next_start_at = self._clock() + delay
        logger.error(
            "Worker %s failed (%s); restart %d in %.0fs",
            slot.category, reason, slot.restart_count, delay
        )

    def _handle_completed(self, slot: WorkerSlot):
        slot.state = WorkerState.COMPLETED
        slot.restart_count = 0
        slot.next_start_at = None
        if self.config.rerun_interval and not self._stopping:
            slot.next_start_at = self._clock() + self.config.rerun_interval
        logger.info("Worker %s completed", slot.category)

    # Poll loop

    def _drain(self, timeout: float) -> int:
        handled = 0
        block = timeout > 0
        while True:
            try:
                message = self.channel.get(block, timeout) if block else self.channel.get_nowait()
            except queue.Empty:
                return handled
            block = False
            self.dispatch(message)
            handled += 1

    def _check_exits(self):
        for slot in self.slots.values():
            handle = slot.handle
            if handle is None or handle.is_alive():
                continue
            code = handle.exitcode
            self._release(slot)
            if slot.state not in ACTIVE_STATES:
                continue
            if code == 0:
                self._handle_completed(slot)
            else:
                self._handle_failure(slot, f"worker exited with code {code}")

    def _check_health(self):
        now = self._clock()
        if now - self._last_health_check < self.config.health_interval:
            return
        self._last_health_check = now
        threshold = self.config.inactivity_threshold

        for slot in self.slots.values():
            if slot.state not in ACTIVE_STATES or slot.handle is None:
                continue
            silent = now - slot.last_message_at
            if slot.check_sent_at is not None and silent >= 2 * threshold:
                logger.warning("Worker %s unresponsive for %.0fs, terminating", slot.category, silent)
                self._join_or_terminate(slot, 0)
                self._handle_failure(slot, "unresponsive")
            elif slot.check_sent_at is None and silent >= threshold:
                if self.send_command(slot.category, Command.HEALTH_CHECK):
                    slot.check_sent_at = now
                else:
                    if slot.handle is not None:
                        self._join_or_terminate(slot, 0)
                    self._handle_failure(slot, "health check could not be delivered")

    def _start_due(self):
        if self._stopping:
            return
        now = self._clock()
        for category, slot in self.slots.items():
            if slot.next_start_at is not None and slot.next_start_at <= now:
                if slot.handle is not None:
                    self._join_or_terminate(slot, 0)
                logger.info("Restarting worker %s (restart %d)", category, slot.restart_count)
                self.start_worker(category)

    def poll(self, timeout: float = 1.0) -> int:
        """
        Run one turn of the receive loop.

        Args:
            timeout: Seconds to wait for the first message

        Returns:
            Number of messages handled
        """
        handled = self._drain(timeout)
        self._check_exits()
        self._check_health()
        self._start_due()
        return handled

    def has_pending_work(self) -> bool:
        """True while any worker is active or scheduled to start."""
        return any(
            slot.state in ACTIVE_STATES or slot.next_start_at is not None
            for slot in self.slots.values()
        )

    def run(self, stop_event: Optional[threading.Event] = None, poll_interval: float = 1.0):
        """
        Start all workers and supervise them until stopped or all finished.

        Args:
            stop_event: Event that requests a graceful shutdown
            poll_interval: Seconds per receive-loop turn
        """
        stop_event = stop_event or threading.Event()
        self.start_all()
        try:
            while not stop_event.is_set() and self.has_pending_work():
                self.poll(poll_interval)
        finally:
            self.shutdown()

    def shutdown(self, timeout: Optional[float] = None):
        """
        Stop every worker: broadcast stop, wait up to the timeout, then terminate.

        Args:
            timeout: Seconds to wait for all workers, defaults to config
        """
        self._stopping = True
        timeout = self.config.shutdown_timeout if timeout is None else timeout
        live = [slot for slot in self.slots.values() if slot.handle is not None]
        for slot in self.slots.values():
            slot.next_start_at = None
        if not live:
            return

        logger.info("Shutting down %d workers", len(live))
        for slot in live:
            self.send_command(slot.category, Command.STOP)

        deadline = time.monotonic() + timeout
        for slot in live:
            remaining = max(deadline - time.monotonic(), 0)
            graceful = self._join_or_terminate(slot, remaining)
            if slot.state in ACTIVE_STATES or not graceful:
                slot.state = WorkerState.TERMINATED

        # Collect acks and final status sent before exit
        self._drain(0)
        acked = sum(1 for slot in live if slot.acknowledged)
        logger.info("Shutdown complete: %d/%d workers acknowledged", acked, len(live))

    def get_status(self) -> dict:
        """
        Get supervisor status.

        Returns:
            Dict with per-category worker records
        """
        return {
            'stopping': self._stopping,
            'workers': {category: slot.to_dict() for category, slot in self.slots.items()},
        }
