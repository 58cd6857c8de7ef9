"""
Shared fixtures for the API test suite.

The app starts against an engine wired with a fake reasoning provider
and a recording transport, so tests run fast and offline.
"""

import pytest
from fastapi.testclient import TestClient

from careloop.engine import setup
from careloop.engine.analysis.config import AIConfig
from careloop.engine.channels import DispatcherRegistry
from careloop.engine.crm import CrmNotifier
from careloop.engine.store import EngineStore
from careloop.engine.tests.factories import (
    RecordingDispatcher,
    analysis_payload,
    fake_llm,
    no_sleep,
)


@pytest.fixture
def llm():
    return fake_llm(analysis_payload())


@pytest.fixture
def transport():
    return RecordingDispatcher()


@pytest.fixture
def engine(monkeypatch, llm, transport):
    store = EngineStore()
    store.save_ai_config(AIConfig(handoff_triggers=["chest pain"], message_buffer_seconds=0))
    registry = DispatcherRegistry(sleep=no_sleep)
    registry.register(transport)
    engine = setup.build_engine(
        store=store,
        dispatchers=registry,
        llm_client=llm,
        crm=CrmNotifier(),
        message_buffer_seconds=0,
    )
    # Analyses finish inside the webhook request
    engine.pipeline.attach_queue(None)

    original = setup.initialize_engine

    async def _initialize(engine_arg=None, start_scheduler=True):
        return await original(engine, start_scheduler=False)

    monkeypatch.setattr(setup, "initialize_engine", _initialize)
    monkeypatch.setattr(setup, "_engine", None)
    return engine


@pytest.fixture
def test_client(engine):
    """TestClient with startup/shutdown run, so the fixture engine is live."""
    from careloop.app import app

    with TestClient(app) as client:
        yield client
