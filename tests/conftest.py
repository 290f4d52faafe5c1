import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from orgflow.config import EngineConfig, OrgflowConfig
from orgflow.directory import InMemoryDirectory
from orgflow.engine import WorkflowEngine
from orgflow.notifications import InMemoryNotifier
from orgflow.persistence import InMemoryWorkflowRepository, SQLiteWorkflowRepository


class FakeClock:
    """Deterministic clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    # A Wednesday
    return FakeClock(datetime(2024, 3, 6, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def directory():
    d = InMemoryDirectory()
    d.add_position("cto")
    d.add_position("eng_manager", reports_to="cto")
    d.add_position("engineer", reports_to="eng_manager")
    d.add_user("alice", "Alice", positions=["engineer"])
    d.add_user("bob", "Bob", positions=["eng_manager"], roles=["approver"])
    d.add_user("carol", "Carol", positions=["cto"])
    d.add_user("dave", "Dave", roles=["approver"])
    d.add_user("erin", "Erin", is_active=False)
    return d


@pytest.fixture
def notifier():
    return InMemoryNotifier()


@pytest.fixture
def make_engine(directory, notifier):
    def _make(
        auto_complete_delay: float = 0, repository=None, **engine_options
    ) -> WorkflowEngine:
        config = OrgflowConfig(
            engine=EngineConfig(auto_complete_delay=auto_complete_delay, **engine_options)
        )
        return WorkflowEngine(
            repository if repository is not None else InMemoryWorkflowRepository(),
            directory=directory,
            notifier=notifier,
            config=config,
        )

    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()


class YieldingRepository(InMemoryWorkflowRepository):
    """In-memory store that gives up the event loop on every step read.

    Lets concurrent calls interleave between reading a step and writing it
    back, the way they do against a real database.
    """

    async def get_step(self, step_id):
        await asyncio.sleep(0)
        return await super().get_step(step_id)

    async def list_steps(self, instance_id):
        await asyncio.sleep(0)
        return await super().list_steps(instance_id)

    async def list_approvals(self, step_instance_id):
        await asyncio.sleep(0)
        return await super().list_approvals(step_instance_id)


@pytest.fixture(params=["yielding", "sqlite"])
def racing_repository(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteWorkflowRepository(tmp_path / "race.db")
    return YieldingRepository()
