"""
Tests for supervisor.py with in-memory worker handles.
"""

import logging
import queue
from dataclasses import dataclass

import pytest

from comic_crawler.config import SupervisorConfig
from comic_crawler.messages import (
    Command,
    ErrorMessage,
    HealthMessage,
    LogMessage,
    ShutdownAck,
    StatusMessage,
)
from comic_crawler.supervisor import WorkerState, WorkerSupervisor, compute_restart_delay


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class FakeHandle:
    """Worker handle that records commands instead of running a process."""

    def __init__(self, category: str, channel: queue.Queue, obeys_stop: bool = True):
        self.category = category
        self.channel = channel
        self.obeys_stop = obeys_stop
        self.commands = []
        self.alive = False
        self.exitcode = None
        self.broken = False
        self.terminated = False
        self.pid = 4242

    def start(self):
        self.alive = True

    def send(self, command: Command):
        if self.broken:
            raise ValueError("Queue is closed")
        self.commands.append(command)
        if command == Command.STOP and self.obeys_stop:
            self.channel.put(ShutdownAck(category=self.category))
            self.exit(0)

    def exit(self, code: int):
        self.alive = False
        self.exitcode = code

    def is_alive(self) -> bool:
        return self.alive

    def join(self, timeout=None):
        pass

    def terminate(self):
        self.terminated = True
        self.exit(-15)


class FlushingHandle(FakeHandle):
    """Worker that only exits once the messages it queued have been read."""

    def send(self, command: Command):
        if command == Command.STOP:
            self.channel.put(LogMessage(
                category=self.category, level=logging.INFO,
                logger_name="comic_crawler.worker", message="Worker stopping",
            ))
        super().send(command)

    def is_alive(self) -> bool:
        return self.alive or not self.channel.empty()


class FakeSpawner:
    def __init__(self, channel: queue.Queue, stubborn=(), handle_class=FakeHandle):
        self.channel = channel
        self.stubborn = set(stubborn)
        self.handle_class = handle_class
        self.handles = {}

    def __call__(self, category: str) -> FakeHandle:
        handle = self.handle_class(category, self.channel, obeys_stop=category not in self.stubborn)
        self.handles.setdefault(category, []).append(handle)
        return handle

    def latest(self, category: str) -> FakeHandle:
        return self.handles[category][-1]


@dataclass(frozen=True)
class UnknownMessage:
    category: str


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channel():
    return queue.Queue()


@pytest.fixture
def spawner(channel):
    return FakeSpawner(channel)


@pytest.fixture
def supervisor(spawner, channel, clock):
    return WorkerSupervisor(["ongoing", "completed"], spawner, channel, SupervisorConfig(), clock=clock)


def test_restart_delay_is_monotonic_and_capped():
    delays = [compute_restart_delay(n, 60, 2, 600) for n in range(20)]

    assert delays[0] == 60
    assert delays[1] == 120
    assert all(a <= b for a, b in zip(delays, delays[1:]))
    assert max(delays) == 600


def test_start_all_sends_start_and_waits_for_first_message(supervisor, spawner, channel):
    supervisor.start_all()

    for category in ("ongoing", "completed"):
        assert spawner.latest(category).commands == [Command.START]
        assert supervisor.slots[category].state == WorkerState.STARTING

    channel.put(StatusMessage(category="ongoing", status="running"))
    supervisor.poll(0)

    assert supervisor.slots["ongoing"].state == WorkerState.RUNNING
    assert supervisor.slots["completed"].state == WorkerState.STARTING


def test_error_message_schedules_restart_with_growing_delay(supervisor, spawner, channel, clock):
    supervisor.start_all()
    channel.put(ErrorMessage(category="ongoing", error_type="UNKNOWN", message="error storm"))
    spawner.latest("ongoing").exit(1)
    supervisor.poll(0)

    slot = supervisor.slots["ongoing"]
    assert slot.state == WorkerState.ERROR
    assert slot.restart_count == 1
    assert slot.next_start_at == clock.now + 60

    clock.advance(59)
    supervisor.poll(0)
    assert slot.started_count == 1

    clock.advance(1)
    supervisor.poll(0)
    assert slot.started_count == 2
    assert slot.state == WorkerState.STARTING

    spawner.latest("ongoing").exit(1)
    supervisor.poll(0)
    assert slot.restart_count == 2
    assert slot.next_start_at == clock.now + 120


def test_clean_exit_completes_and_resets_counter(supervisor, spawner, clock):
    supervisor.start_all()
    slot = supervisor.slots["ongoing"]
    slot.restart_count = 3

    spawner.latest("ongoing").exit(0)
    supervisor.poll(0)

    assert slot.state == WorkerState.COMPLETED
    assert slot.restart_count == 0
    assert slot.next_start_at is None
    assert supervisor.slots["completed"].state == WorkerState.STARTING


def test_rerun_interval_respawns_completed_worker(spawner, channel, clock):
    supervisor = WorkerSupervisor(["ongoing"], spawner, channel, SupervisorConfig(rerun_interval=3600), clock=clock)
    supervisor.start_all()
    spawner.latest("ongoing").exit(0)
    supervisor.poll(0)

    clock.advance(3600)
    supervisor.poll(0)

    assert supervisor.slots["ongoing"].started_count == 2


def test_silent_worker_is_checked_then_restarted(supervisor, spawner, clock):
    supervisor.start_all()
    first = spawner.latest("ongoing")

    clock.advance(120)
    supervisor.poll(0)
    assert Command.HEALTH_CHECK in first.commands

    clock.advance(120)
    supervisor.poll(0)
    slot = supervisor.slots["ongoing"]
    assert first.terminated
    assert slot.state == WorkerState.ERROR
    assert slot.last_error == "unresponsive"


def test_health_reply_clears_pending_check(supervisor, spawner, channel, clock):
    supervisor.start_all()
    clock.advance(120)
    supervisor.poll(0)

    channel.put(HealthMessage(category="ongoing", healthy=True, phase="details", memory_mb=80.0))
    clock.advance(120)
    supervisor.poll(0)

    slot = supervisor.slots["ongoing"]
    assert slot.state == WorkerState.RUNNING
    assert slot.check_sent_at is None
    assert slot.health['phase'] == "details"


def test_undeliverable_health_check_triggers_restart_path(supervisor, spawner, clock):
    supervisor.start_all()
    spawner.latest("completed").broken = True

    clock.advance(120)
    supervisor.poll(0)

    slot = supervisor.slots["completed"]
    assert slot.state == WorkerState.ERROR
    assert slot.restart_count == 1
    assert slot.last_error == "health check could not be delivered"


def test_shutdown_terminates_workers_that_do_not_exit(channel, clock):
    spawner = FakeSpawner(channel, stubborn={"completed"})
    supervisor = WorkerSupervisor(["ongoing", "completed"], spawner, channel, SupervisorConfig(), clock=clock)
    supervisor.start_all()

    supervisor.shutdown(timeout=1)

    assert Command.STOP in spawner.latest("ongoing").commands
    assert not spawner.latest("ongoing").terminated
    assert spawner.latest("completed").terminated
    assert supervisor.slots["ongoing"].acknowledged
    assert all(slot.state == WorkerState.TERMINATED for slot in supervisor.slots.values())
    assert all(slot.next_start_at is None for slot in supervisor.slots.values())


def test_shutdown_reads_messages_while_waiting_for_exit(channel, clock):
    spawner = FakeSpawner(channel, handle_class=FlushingHandle)
    supervisor = WorkerSupervisor(["ongoing"], spawner, channel, SupervisorConfig(), clock=clock)
    supervisor.start_all()

    supervisor.shutdown(timeout=5)

    assert not spawner.latest("ongoing").terminated
    assert supervisor.slots["ongoing"].acknowledged
    assert channel.empty()


def test_no_restart_is_scheduled_after_shutdown(supervisor, spawner, channel):
    supervisor.start_all()
    supervisor.shutdown(timeout=1)

    channel.put(ErrorMessage(category="ongoing", error_type="UNKNOWN", message="late error"))
    supervisor.poll(0)

    assert supervisor.slots["ongoing"].next_start_at is None


def test_log_messages_are_reemitted(supervisor, channel, caplog):
    with caplog.at_level(logging.INFO, logger="comic_crawler.supervisor"):
        channel.put(LogMessage(category="ongoing", level=logging.WARNING, logger_name="comic_crawler.pipeline", message="Empty page 3"))
        supervisor.poll(0)

    assert "[ongoing] Empty page 3" in caplog.text


def test_unknown_message_type_is_rejected(supervisor):
    with pytest.raises(TypeError):
        supervisor.dispatch(UnknownMessage(category="ongoing"))


def test_stop_worker_and_reset(supervisor, spawner):
    supervisor.start_all()

    assert supervisor.stop_worker("ongoing")
    assert supervisor.slots["ongoing"].state == WorkerState.TERMINATED

    supervisor.slots["ongoing"].restart_count = 4
    supervisor.reset("ongoing")
    assert supervisor.slots["ongoing"].state == WorkerState.IDLE
    assert supervisor.slots["ongoing"].restart_count == 0

    status = supervisor.get_status()
    assert status['workers']['completed']['state'] == "starting"
    assert status['workers']['completed']['pid'] == 4242


def test_run_returns_when_all_workers_finish(spawner, channel, clock):
    supervisor = WorkerSupervisor(["ongoing"], spawner, channel, SupervisorConfig(), clock=clock)

    original = spawner.__call__

    def spawn_and_finish(category):
        handle = original(category)
        handle.start = lambda: handle.exit(0)
        return handle

    supervisor.spawner = spawn_and_finish
    supervisor.run(poll_interval=0)

    assert supervisor.slots["ongoing"].state == WorkerState.COMPLETED
