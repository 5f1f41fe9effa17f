"""Shared fixtures for unit tests: a fake CRM, a fixed clock and an engine on tmp_path."""

import random
from datetime import UTC, datetime

import pytest

from crm_automation.core.config import DispatchConfig, EngineConfig, clear_config_cache
from crm_automation.core.engine import WorkflowEngine
from crm_automation.workflow.conditions import ConditionRegistry
from tests.unit.fake_crm import FakeCrm

# Monday 10:00 UTC
NOW = datetime(2024, 3, 4, 10, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _reset_registries():
    ConditionRegistry.reset()
    clear_config_cache()
    yield
    ConditionRegistry.reset()
    clear_config_cache()


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def crm():
    return FakeCrm([
        {
            "id": "contact-1",
            "first_name": "Ada",
            "last_name": "Lovelace",
            "email": "ada@example.com",
            "phone": "+15550001",
            "lead_score": 80,
            "assigned_to": "user-owner",
        },
        {
            "id": "contact-2",
            "first_name": "Grace",
            "email": "grace@example.com",
            "lead_score": 20,
        },
        {"id": "contact-3", "first_name": "Alan", "lead_score": 5},
    ])


@pytest.fixture
def engine_config(tmp_path):
    return EngineConfig(workspace=tmp_path, dispatch=DispatchConfig(timeout_seconds=5))


@pytest.fixture
def engine(engine_config, crm):
    engine = WorkflowEngine(engine_config, crm.collaborators(), rng=random.Random(7))
    yield engine
    engine.close()
