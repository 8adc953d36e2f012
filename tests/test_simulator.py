"""Tests for the flash progress simulator."""

import asyncio
import random

import pytest

from conftest import make_task
from flashpanel.models.task import FlashMode, TaskStatus
from flashpanel.services.simulator import (
    DEFAULT_ROBOT_STEPS,
    DEFAULT_SERVER_STEPS,
    FlashSimulator,
    phase_index,
)
from flashpanel.services.state_machine import apply_transition


@pytest.mark.parametrize("progress,expected", [
    (0, 0),
    (16, 0),
    (17, 1),
    (50, 3),
    (99, 5),
    (100, 5),
])
def test_phase_index(progress, expected):
    assert phase_index(progress, 6) == expected


class TestAdvance:
    def test_non_running_task_is_untouched(self, simulator):
        for status in (TaskStatus.PENDING, TaskStatus.PAUSED, TaskStatus.CANCELLED):
            task = make_task(status=status, progress=40)
            assert simulator.advance(task) is task

    def test_tick_adds_progress_step_and_log(self, simulator):
        task = make_task(status=TaskStatus.RUNNING, progress=20)

        updated = simulator.advance(task)

        assert updated.progress == 40
        assert updated.current_step == DEFAULT_ROBOT_STEPS[2]
        assert updated.logs[-1].endswith(f"{DEFAULT_ROBOT_STEPS[2]}... 40%")
        assert updated.status == TaskStatus.RUNNING

    def test_server_mode_uses_server_steps(self, simulator):
        task = make_task(status=TaskStatus.RUNNING, mode=FlashMode.SERVER,
                         device_type_id=None, version_id=None, software_ids=["1"])
        assert simulator.advance(task).current_step == DEFAULT_SERVER_STEPS[1]

    def test_progress_reaches_100_only_with_success(self, simulator):
        task = make_task(status=TaskStatus.RUNNING)
        seen = []
        while task.status == TaskStatus.RUNNING:
            task = simulator.advance(task)
            seen.append(task)

        assert task.status == TaskStatus.SUCCESS
        assert task.progress == 100
        assert task.end_time is not None
        assert task.logs[-1].endswith("任务成功完成")
        assert task.logs[-2].endswith("100%")
        for step in seen:
            assert (step.progress == 100) == (step.status == TaskStatus.SUCCESS)
        assert [s.progress for s in seen] == sorted(s.progress for s in seen)

    def test_step_is_clamped_to_100(self, store, channel):
        simulator = FlashSimulator(store, channel, progress_step=30)
        updated = simulator.advance(make_task(status=TaskStatus.RUNNING, progress=90))
        assert updated.progress == 100
        assert updated.status == TaskStatus.SUCCESS

    def test_failure_roll_fails_task(self, store, channel):
        simulator = FlashSimulator(store, channel, failure_rate=1.0, rng=random.Random(1))

        updated = simulator.advance(make_task(status=TaskStatus.RUNNING, progress=20))

        assert updated.status == TaskStatus.FAILED
        assert updated.can_retry is True
        assert updated.error_message.endswith("失败")

    def test_rejects_non_positive_step(self, store, channel):
        with pytest.raises(ValueError):
            FlashSimulator(store, channel, progress_step=0)


class TestBackgroundRun:
    async def test_runs_pending_task_to_success(self, store, channel, simulator, catalog):
        updates = []
        channel.subscribe_to_task("t1", updates.append)
        store.upsert(make_task("t1"))

        assert simulator.start("t1") is True
        await asyncio.wait_for(simulator.wait("t1"), timeout=2)

        task = store.get_by_id("t1")
        assert task.status == TaskStatus.SUCCESS
        assert task.progress == 100
        assert task.logs[0].endswith("任务已开始")
        assert updates[-1].status == TaskStatus.SUCCESS
        assert not simulator.is_active("t1")
        assert any(r.task_id == "t1" for r in catalog.flash_records.all())

    async def test_start_is_idempotent(self, store, channel):
        simulator = FlashSimulator(store, channel, tick_interval=0.05, start_delay=0)
        store.upsert(make_task("t1"))

        assert simulator.start("t1") is True
        assert simulator.start("t1") is False
        assert simulator.active_count == 1

        await simulator.stop_all()
        assert simulator.active_count == 0

    async def test_cancel_stops_progress(self, store, channel, machine):
        simulator = FlashSimulator(store, channel, tick_interval=0.01, progress_step=1, start_delay=0)
        store.upsert(make_task("t1"))
        simulator.start("t1")
        while store.get_by_id("t1").progress < 3:
            await asyncio.sleep(0.01)

        cancelled = machine.transition("t1", TaskStatus.CANCELLED)
        await asyncio.wait_for(simulator.wait("t1"), timeout=1)

        task = store.get_by_id("t1")
        assert task.status == TaskStatus.CANCELLED
        assert task.progress == cancelled.progress
        assert task.logs == cancelled.logs

    async def test_paused_task_waits(self, store, channel, machine):
        simulator = FlashSimulator(store, channel, tick_interval=0.01, progress_step=1, start_delay=0)
        store.upsert(make_task("t1"))
        simulator.start("t1")
        while store.get_by_id("t1").progress < 2:
            await asyncio.sleep(0.01)

        paused = machine.transition("t1", TaskStatus.PAUSED)
        await asyncio.sleep(0.05)

        assert store.get_by_id("t1").progress == paused.progress
        assert simulator.is_active("t1")

        await simulator.stop_all()

    async def test_deleted_task_ends_worker(self, store, channel):
        simulator = FlashSimulator(store, channel, tick_interval=0.01, start_delay=0)
        store.upsert(make_task("t1", status=TaskStatus.RUNNING))
        simulator.start("t1")

        store.remove("t1")
        await asyncio.wait_for(simulator.wait("t1"), timeout=1)

        assert not simulator.is_active("t1")
        assert "t1" not in store

    async def test_stop_cancels_worker(self, store, channel):
        simulator = FlashSimulator(store, channel, tick_interval=10, start_delay=0)
        store.upsert(make_task("t1", status=TaskStatus.RUNNING))
        simulator.start("t1")

        assert simulator.stop("t1") is True
        assert simulator.stop("t1") is False
        await asyncio.sleep(0)
        assert store.get_by_id("t1").progress == 0

    def test_from_config(self, store, channel):
        class Config:
            values = {"simulation.tick_interval": 0.2, "simulation.progress_step": 10}

            def get(self, key, default=None):
                return self.values.get(key, default)

        simulator = FlashSimulator.from_config(Config(), store, channel)

        assert simulator.steps_for(FlashMode.ROBOT) == DEFAULT_ROBOT_STEPS
        assert simulator.advance(
            apply_transition(make_task(), TaskStatus.RUNNING)
        ).progress == 10
