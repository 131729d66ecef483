"""Shared pytest fixtures for zapflow tests."""
import sys
sys.dont_write_bytecode = True

from datetime import datetime, timezone  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402

from tests.fakes import CLIENT_ID, INSTANCE_ID, FakeDatabase  # noqa: E402
from zapflow.api.pipeline import Pipeline  # noqa: E402
from zapflow.domain.assistant import AssistantInvoker  # noqa: E402
from zapflow.domain.batches import BatchProcessor  # noqa: E402
from zapflow.domain.dispatcher import OutboundDispatcher  # noqa: E402
from zapflow.infra.settings import Settings  # noqa: E402
from zapflow.services.llm.base import LLMResponse  # noqa: E402
from zapflow.tasks.client import TasksClient  # noqa: E402


@pytest.fixture
def fake_db() -> FakeDatabase:
    db = FakeDatabase()
    db.add_instance(INSTANCE_ID, CLIENT_ID)
    return db


@pytest.fixture
def settings() -> Settings:
    """Fast retries so backoff never slows a test down."""
    return Settings(
        llm_retry_base_seconds=0.0,
        dispatch_retry_seconds=0.0,
        gateway_base_url="http://gateway.test",
        gateway_api_key="gw-key",
    )


@pytest.fixture
def tasks_client() -> TasksClient:
    return TasksClient(backend="inline")


@pytest.fixture
def gateway() -> MagicMock:
    gw = MagicMock()
    gw.send_text.return_value = "GW-TEXT-1"
    gw.send_audio.return_value = "GW-AUDIO-1"
    return gw


@pytest.fixture
def t0() -> datetime:
    return datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def _clean_task_env(monkeypatch):
    """Tasks and webhook auth read env at call time; start each test clean."""
    for name in (
        "TASKS_BACKEND",
        "TASKS_OIDC_AUDIENCE",
        "TASKS_OIDC_SERVICE_ACCOUNT",
        "INTERNAL_TASK_SECRET",
        "GATEWAY_WEBHOOK_SECRET",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def provider() -> MagicMock:
    """LLM provider double; every tenant key gets this one."""
    p = MagicMock()
    p.generate.return_value = LLMResponse(content="Olá! Como posso ajudar?", model="gpt-4o-mini")
    return p


@pytest.fixture
def pipeline(settings, fake_db, tasks_client, gateway, provider) -> Pipeline:
    """Pipeline over the fake database with gateway, LLM and speech mocked."""
    speech = MagicMock()
    invoker = AssistantInvoker(
        settings,
        txn=fake_db.txn,
        provider_factory=lambda api_key, model: provider,
        speech=speech,
    )
    dispatcher = OutboundDispatcher(gateway, settings, txn=fake_db.txn)
    batches = BatchProcessor(
        settings,
        invoker=invoker,
        dispatcher=dispatcher,
        tasks_client=tasks_client,
        txn=fake_db.txn,
    )
    return Pipeline(
        settings=settings,
        txn=fake_db.txn,
        tasks_client=tasks_client,
        gateway=gateway,
        speech=speech,
        invoker=invoker,
        dispatcher=dispatcher,
        batches=batches,
    )
