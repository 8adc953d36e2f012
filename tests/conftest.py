"""
Shared pytest fixtures.

- In-memory services wired the same way create_app() wires them
- A FastAPI app built from a temporary config.yaml (no file logging, no seed tasks)
- An authenticated TestClient
"""

import random
from typing import Generator

import pytest
import yaml
from fastapi.testclient import TestClient

from flashpanel.models.task import FlashMode, FlashTask, TaskStatus
from flashpanel.services.catalog import CatalogService
from flashpanel.services.event_bus import EventBus, TaskChannel
from flashpanel.services.simulator import FlashSimulator
from flashpanel.services.state_machine import TaskStateMachine
from flashpanel.services.task_service import TaskService
from flashpanel.services.task_store import TaskStore


def make_task(task_id: str = "task-a", **fields) -> FlashTask:
    """Build a complete robot-mode task record with sensible defaults."""
    defaults = {
        "id": task_id,
        "mode": FlashMode.ROBOT,
        "device_type_id": "1",
        "version_id": "1",
        "device_serial_number": "SN100",
        "device_ip": "192.168.1.100",
        "device_username": "admin",
        "status": TaskStatus.PENDING,
    }
    defaults.update(fields)
    return FlashTask(**defaults)


@pytest.fixture
def store() -> TaskStore:
    return TaskStore()


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def channel(bus) -> TaskChannel:
    return TaskChannel(bus)


@pytest.fixture
def machine(store) -> TaskStateMachine:
    return TaskStateMachine(store)


@pytest.fixture
def catalog() -> CatalogService:
    service = CatalogService()
    service.seed()
    return service


@pytest.fixture
def simulator(store, channel, catalog) -> FlashSimulator:
    return FlashSimulator(
        store,
        channel,
        tick_interval=0,
        progress_step=20,
        start_delay=0,
        on_finished=catalog.record_task_result,
        rng=random.Random(7),
    )


@pytest.fixture
def task_service(store, machine, channel, simulator, catalog) -> TaskService:
    return TaskService(store, machine, channel, simulator, catalog)


# =============================================================================
# Application fixtures
# =============================================================================


def write_config(directory, seed_tasks=False, **simulation) -> str:
    """Write a test config.yaml (no file logging, seed tasks off by default) and return its path."""
    data = {
        "app": {"name": "FlashPanel", "debug": False, "seed_tasks": seed_tasks},
        "security": {"admin_user": "admin", "admin_password": "secret"},
        "simulation": {"tick_interval": 0.01, "start_delay": 0, "progress_step": 25, **simulation},
        "logging": {
            "level": "INFO",
            "console": {"enabled": True, "colorize": False},
            "file": {"enabled": False},
        },
    }
    path = directory / "config.yaml"
    path.write_text(yaml.safe_dump(data, allow_unicode=True), encoding="utf-8")
    return str(path)


@pytest.fixture
def config_file(tmp_path) -> str:
    return write_config(tmp_path)


@pytest.fixture
def app(config_file):
    from flashpanel.main import create_app

    return create_app(config_path=config_file)


@pytest.fixture
def anon_client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as client:
        yield client


@pytest.fixture
def client(anon_client) -> TestClient:
    resp = anon_client.post("/api/v1/auth/login", json={"username": "admin", "password": "secret"})
    assert resp.status_code == 200
    return anon_client
