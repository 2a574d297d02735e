"""
Shared fixtures: a throwaway SQLite database per test, seeded profiles and a
notifier that records what it was asked to send.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import pytest

from shared.database import close_db, create_engine, create_session_factory, init_db
from shared.db_models import DepartmentManager, Profile, Program
from shared.metrics import MetricsCollector
from shared.models import Actor, InvoiceCategory, NotificationKind, NotificationResult, Role
from shared.notifier import NotificationDispatcher, Notifier
from services.audit_log import AuditLog
from services.manager_assignment import ManagerAssignmentResolver
from services.workflow_engine import WorkflowEngine


class RecordingNotifier(Notifier):
    """Keeps every send; optionally fails them."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent: List[Tuple[NotificationKind, str, Dict[str, Any]]] = []

    async def send(self, kind, recipient, template_data=None) -> NotificationResult:
        if self.fail:
            raise RuntimeError("mail relay down")
        self.sent.append((kind, recipient, template_data or {}))
        return NotificationResult(success=True)

    def recipients(self, kind: NotificationKind) -> List[str]:
        return [recipient for k, recipient, _ in self.sent if k == kind]


class FakeClock:
    """Settable naive-UTC clock."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


PEOPLE = [
    dict(id="u-sub", full_name="Sam Submitter", email="sam@example.com", role=Role.SUBMITTER, department_id="d-news"),
    dict(id="u-sub2", full_name="Sue Other", email="sue@example.com", role=Role.SUBMITTER, department_id="d-news"),
    dict(id="u-mgr", full_name="Mia Manager", email="mia@example.com", role=Role.MANAGER,
         department_id="d-news", program_ids=["p-news"]),
    dict(id="u-mgr2", full_name="Max Manager", email="max@example.com", role=Role.MANAGER, department_id="d-sport"),
    dict(id="u-adm", full_name="Ada Admin", email="ada@example.com", role=Role.ADMIN),
    dict(id="u-fin", full_name="Finn Finance", email="finn@example.com", role=Role.FINANCE),
    dict(id="u-ops", full_name="Olly Ops", email="olly@example.com", role=Role.OPERATIONS),
    dict(id="u-view", full_name="Vera Viewer", email="vera@example.com", role=Role.VIEWER),
]


@pytest.fixture
async def db_engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'approvals.db'}", echo=False)
    await init_db(engine)
    yield engine
    await close_db(engine)


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


async def seed_directory(session_factory) -> None:
    """Profiles, the News Desk program and its default manager."""
    async with session_factory() as session:
        for i, person in enumerate(PEOPLE):
            person = dict(person)
            session.add(
                Profile(
                    program_ids=person.pop("program_ids", []),
                    created_at=datetime(2026, 1, 1) + timedelta(minutes=i),
                    **person,
                )
            )
        session.add(Program(id="p-news", name="News Desk", department_id="d-news"))
        session.add(DepartmentManager(department_id="d-news", manager_user_id="u-mgr", sort_order=0))
        await session.commit()


@pytest.fixture
def seed():
    return seed_directory


@pytest.fixture
async def people(session_factory) -> Dict[str, Actor]:
    """Seeded profiles keyed by id."""
    await seed_directory(session_factory)

    async with session_factory() as session:
        profiles = (await session.execute(Profile.__table__.select())).all()
    return {row.id: Actor.model_validate(row) for row in profiles}


@pytest.fixture
def metrics():
    return MetricsCollector()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def dispatcher(notifier):
    return NotificationDispatcher(notifier)


@pytest.fixture
def audit_log(session_factory, metrics):
    return AuditLog(session_factory, metrics)


@pytest.fixture
def workflow(session_factory, audit_log, dispatcher, metrics, clock):
    return WorkflowEngine(
        session_factory,
        audit_log,
        ManagerAssignmentResolver(session_factory),
        dispatcher,
        metrics=metrics,
        clock=clock,
    )


@pytest.fixture
def submit(workflow, people):
    """Submit an invoice as Sam in the News department."""

    async def _submit(**overrides):
        kwargs = dict(
            department_id="d-news",
            program_id="p-news",
            category=InvoiceCategory.GUEST,
            service_description="Guest appearance\nProducer: Pat Producer",
        )
        kwargs.update(overrides)
        actor = kwargs.pop("actor", people["u-sub"])
        return await workflow.submit_invoice(actor, **kwargs)

    return _submit


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def failing_dispatcher():
    return NotificationDispatcher(RecordingNotifier(fail=True))
