"""
Pytest Configuration and Fixtures

Shared fixtures for all tests. Every test runs against the in-memory store
with the background scheduler disabled; timeouts are driven by a fake clock.
"""
import os
import tempfile

# Settings are read at import time
os.environ.setdefault("PERSISTENCE_BACKEND", "memory")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("LOGS_PATH", os.path.join(tempfile.gettempdir(), "playbook-engine-test-logs"))

import pytest

from playbook_engine.domain.models import ActorContext
from playbook_engine.engine.action_gateway import ActionGateway, register_default_handlers
from playbook_engine.engine.orchestrator import RunOrchestrator
from playbook_engine.repositories import Repositories

from .helpers import FakeClock


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repos() -> Repositories:
    return Repositories.in_memory()


@pytest.fixture
def gateway(repos: Repositories, clock: FakeClock) -> ActionGateway:
    return register_default_handlers(ActionGateway(repos.dispatches, clock))


@pytest.fixture
def orchestrator(repos: Repositories, gateway: ActionGateway, clock: FakeClock):
    engine = RunOrchestrator(
        repos,
        gateway=gateway,
        clock=clock,
        default_max_concurrency=4,
        cas_max_retries=5,
        stalled_dispatch_minutes=15
    )
    yield engine
    engine.shutdown(wait=True)


@pytest.fixture
def approver() -> ActorContext:
    return ActorContext(actor_id="alice", roles=["comms_lead"])
