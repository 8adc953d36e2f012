"""Tests for TaskService."""

import asyncio

import pytest

from flashpanel.core.errors import InvalidTransitionError, TaskNotFoundError, ValidationError
from flashpanel.models.catalog import FlashRecordStatus
from flashpanel.models.task import FlashMode, FlashTaskCreate, TaskPriority, TaskStatus
from flashpanel.services.simulator import FlashSimulator
from flashpanel.services.task_service import TaskService


def robot_payload(**overrides) -> FlashTaskCreate:
    data = {
        "mode": "robot",
        "deviceTypeId": "1",
        "versionId": "2",
        "deviceIp": "192.168.1.100",
        "deviceUsername": "admin",
        "devicePassword": "secret",
    }
    data.update(overrides)
    return FlashTaskCreate.model_validate(data)


def server_payload(**overrides) -> FlashTaskCreate:
    data = {
        "mode": "server",
        "softwareIds": ["1", "2"],
        "servers": [
            {"ip": "10.0.0.1", "username": "root", "password": "p1"},
            {"ip": "10.0.0.2", "port": "2222", "username": "root"},
        ],
    }
    data.update(overrides)
    return FlashTaskCreate.model_validate(data)


@pytest.fixture
def idle_service(store, machine, channel, catalog) -> TaskService:
    """Service whose simulator never ticks within a test."""
    simulator = FlashSimulator(store, channel, tick_interval=60, start_delay=60)
    return TaskService(store, machine, channel, simulator, catalog)


class TestCreate:
    async def test_create_robot_task_is_pending(self, idle_service, store, channel):
        published = []
        channel.subscribe_to_all(published.append)

        tasks = await idle_service.create_task(robot_payload())

        assert len(tasks) == 1
        task = tasks[0]
        assert task.status == TaskStatus.PENDING
        assert task.progress == 0
        assert task.device_serial_number.startswith("SN")
        assert task.logs[0].endswith("任务已创建")
        assert store.get_by_id(task.id) == task
        assert published == [[task]]

    async def test_password_is_not_stored(self, idle_service):
        task = (await idle_service.create_task(robot_payload()))[0]
        assert "secret" not in task.model_dump_json()

    async def test_server_mode_creates_one_task_per_server(self, idle_service, store):
        tasks = await idle_service.create_task(server_payload())

        assert [(t.device_ip, t.device_port) for t in tasks] == [("10.0.0.1", "22"), ("10.0.0.2", "2222")]
        assert all(t.mode == FlashMode.SERVER and t.software_ids == ["1", "2"] for t in tasks)
        assert len(store) == 2

    @pytest.mark.parametrize("payload", [
        {"mode": "robot", "deviceTypeId": "1", "deviceIp": "1.1.1.1", "deviceUsername": "a"},
        {"mode": "robot", "deviceTypeId": "1", "versionId": "1", "deviceUsername": "a"},
        {"mode": "server", "deviceIp": "1.1.1.1", "deviceUsername": "a"},
        {"mode": "server", "softwareIds": ["1"]},
    ])
    def test_invalid_payloads(self, payload):
        with pytest.raises(ValueError):
            FlashTaskCreate.model_validate(payload)

    async def test_start_flash_runs_to_success(self, task_service, simulator, store, catalog):
        tasks = await task_service.start_flash(robot_payload())
        task_id = tasks[0].id

        await asyncio.wait_for(simulator.wait(task_id), timeout=2)

        task = store.get_by_id(task_id)
        assert task.status == TaskStatus.SUCCESS
        assert task.progress == 100
        records = [r for r in catalog.flash_records.all() if r.task_id == task_id]
        assert len(records) == 1
        assert records[0].status == FlashRecordStatus.SUCCESS


class TestStatusChanges:
    async def test_pause_resume_cancel(self, idle_service, store, catalog):
        task_id = (await idle_service.create_task(robot_payload()))[0].id

        await idle_service.update_status(task_id, TaskStatus.RUNNING)
        paused = await idle_service.pause(task_id)
        assert paused.can_resume is True

        resumed = await idle_service.resume(task_id)
        assert resumed.status == TaskStatus.RUNNING

        cancelled = await idle_service.cancel(task_id)
        assert cancelled.status == TaskStatus.CANCELLED
        assert cancelled.end_time is not None
        assert store.get_by_id(task_id).status == TaskStatus.CANCELLED
        assert [r.status for r in catalog.flash_records.all() if r.task_id == task_id] == [
            FlashRecordStatus.CANCELLED
        ]

    async def test_running_starts_simulator_and_terminal_stops_it(self, idle_service):
        task_id = (await idle_service.create_task(robot_payload()))[0].id
        simulator = idle_service._simulator

        await idle_service.update_status(task_id, TaskStatus.RUNNING)
        assert simulator.is_active(task_id)

        await idle_service.fail(task_id, "写入超时")
        assert not simulator.is_active(task_id)

    async def test_invalid_transition(self, idle_service, store):
        task_id = (await idle_service.create_task(robot_payload()))[0].id
        await idle_service.cancel(task_id)
        before = store.get_by_id(task_id)

        with pytest.raises(InvalidTransitionError):
            await idle_service.resume(task_id)

        assert store.get_by_id(task_id) == before

    async def test_pause_pending_task_is_rejected(self, idle_service):
        task_id = (await idle_service.create_task(robot_payload()))[0].id
        with pytest.raises(InvalidTransitionError):
            await idle_service.pause(task_id)

    async def test_unknown_task(self, idle_service):
        with pytest.raises(TaskNotFoundError):
            await idle_service.update_status("missing", TaskStatus.RUNNING)

    async def test_retry_failed_task(self, idle_service, store):
        original = (await idle_service.create_task(robot_payload()))[0]
        await idle_service.fail(original.id, "连接失败")

        retried = await idle_service.retry(original.id)

        assert retried.id != original.id
        assert retried.status == TaskStatus.PENDING
        assert retried.device_ip == original.device_ip
        assert retried.version_id == original.version_id
        assert store.get_by_id(original.id).status == TaskStatus.FAILED
        assert idle_service._simulator.is_active(retried.id)
        await idle_service._simulator.stop_all()

    async def test_retry_requires_failed_task(self, idle_service):
        task_id = (await idle_service.create_task(robot_payload()))[0].id
        with pytest.raises(ValidationError):
            await idle_service.retry(task_id)


class TestQueries:
    async def test_list_tasks_paginates_and_filters(self, idle_service):
        idle_service.seed()

        page = await idle_service.list_tasks(page=1, page_size=3)
        assert page.total == 4
        assert len(page.data) == 3
        assert page.total_pages == 2

        running = await idle_service.list_tasks(status=TaskStatus.RUNNING)
        assert [t.id for t in running.data] == ["task-1"]

        servers = await idle_service.list_tasks(mode=FlashMode.SERVER, sort_by="progress", sort_order="asc")
        assert [t.id for t in servers.data] == ["task-4", "task-2"]

    async def test_list_tasks_rejects_unknown_sort(self, idle_service):
        with pytest.raises(ValidationError):
            await idle_service.list_tasks(sort_by="deviceIp")

    async def test_seed_stats(self, idle_service):
        idle_service.seed()
        stats = idle_service.get_stats()
        assert (stats.total, stats.running, stats.success, stats.failed, stats.pending) == (4, 1, 1, 1, 1)

    async def test_update_editable_fields(self, idle_service, store):
        task_id = (await idle_service.create_task(robot_payload()))[0].id

        updated = await idle_service.update_task(task_id, {"priority": "high", "tags": ["产线A"], "operator": "张三"})

        assert updated.priority == TaskPriority.HIGH
        assert store.get_by_id(task_id).tags == ["产线A"]

    async def test_update_accepts_camel_case(self, idle_service):
        task_id = (await idle_service.create_task(robot_payload()))[0].id
        updated = await idle_service.update_task(task_id, {"estimatedDuration": 60000})
        assert updated.estimated_duration == 60000

    async def test_update_rejects_state_fields(self, idle_service):
        task_id = (await idle_service.create_task(robot_payload()))[0].id

        with pytest.raises(ValidationError) as exc_info:
            await idle_service.update_task(task_id, {"status": "success", "progress": 100})

        assert set(exc_info.value.fields) == {"status", "progress"}

    async def test_update_rejects_bad_value(self, idle_service):
        task_id = (await idle_service.create_task(robot_payload()))[0].id
        with pytest.raises(ValidationError):
            await idle_service.update_task(task_id, {"priority": "whenever"})

    async def test_delete_task(self, idle_service, store):
        task_id = (await idle_service.create_task(robot_payload()))[0].id
        await idle_service.update_status(task_id, TaskStatus.RUNNING)

        await idle_service.delete_task(task_id)

        assert task_id not in store
        assert not idle_service._simulator.is_active(task_id)
        with pytest.raises(TaskNotFoundError):
            await idle_service.delete_task(task_id)


class TestValidateConnection:
    async def test_reachable(self, task_service):
        result = await task_service.validate_connection("192.168.1.100", "22", "admin")
        assert result.success is True

    @pytest.mark.parametrize("ip,port,username", [
        ("192.168.1.999", "22", "admin"),
        ("not-an-ip", "22", "admin"),
        ("192.168.1.100", "70000", "admin"),
        ("192.168.1.100", "ssh", "admin"),
        ("192.168.1.100", "22", ""),
    ])
    async def test_unreachable_or_invalid(self, task_service, ip, port, username):
        result = await task_service.validate_connection(ip, port, username)
        assert result.success is False
        assert result.message


class TestResumeRunning:
    async def test_seeded_running_task_progresses_to_success(self, task_service, simulator, store):
        task_service.seed()

        assert task_service.resume_running() == 1
        await asyncio.wait_for(simulator.wait("task-1"), timeout=2)

        task = store.get_by_id("task-1")
        assert task.status == TaskStatus.SUCCESS
        assert task.progress == 100
        assert store.get_by_id("task-4").status == TaskStatus.PENDING

    async def test_already_active_tasks_are_not_restarted(self, idle_service, store):
        task_id = (await idle_service.create_task(robot_payload()))[0].id
        await idle_service.update_status(task_id, TaskStatus.RUNNING)

        assert idle_service.resume_running() == 0
        await idle_service._simulator.stop_all()
