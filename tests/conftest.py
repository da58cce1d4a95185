import base64
import io
from datetime import date, datetime, time, timezone
from types import SimpleNamespace

import pytest
from fastapi.testclient import TestClient
from PIL import Image, ImageDraw
from sqlalchemy.orm import sessionmaker

from crewsheet.auth.security import create_access_token
from crewsheet.db import Base, build_engine, get_db
from crewsheet.models.models import (
    AssignedPersonnel, Client, Job, Shift, TimeEntry, User,
    ROLE_CLIENT, ROLE_CREW_CHIEF, ROLE_EMPLOYEE, ROLE_MANAGER,
    CLOCK_SHIFT_ENDED,
)
from crewsheet.routes.timesheets import get_dispatcher
from crewsheet.services.notifications import NotificationDispatcher


SHIFT_DATE = date(2026, 3, 2)


def utc(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 3, 2, hour, minute, tzinfo=timezone.utc)


def make_png(width: int = 240, height: int = 80, stroke: str = "black") -> bytes:
    image = Image.new("RGB", (width, height), "white")
    draw = ImageDraw.Draw(image)
    draw.line([(10, height - 20), (width // 3, 15), (width // 2, height - 25), (width - 10, 20)], fill=stroke, width=3)
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture()
def engine(tmp_path):
    eng = build_engine(f"sqlite:///{tmp_path / 'crewsheet-test.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture()
def world(db):
    """A client with one job, a shift led by a crew chief, and two workers who have clocked out."""
    acme = Client(company_name="Acme Staging Co", contact_person="Pat Rivera", contact_email="pat@acme.test")
    globex = Client(company_name="Globex Events", contact_person="Sam Lee")
    db.add_all([acme, globex])
    db.flush()

    manager = User(name="Morgan Manager", email="manager@crew.test", role=ROLE_MANAGER)
    crew_chief = User(name="Casey Chief", email="chief@crew.test", role=ROLE_CREW_CHIEF)
    other_chief = User(name="Drew Other", email="drew@crew.test", role=ROLE_CREW_CHIEF)
    client_user = User(name="Alex Acme", email="alex@acme.test", role=ROLE_CLIENT, client_company_id=acme.id)
    inactive_client = User(
        name="Ina Acme", email="ina@acme.test", role=ROLE_CLIENT, client_company_id=acme.id, is_active=False,
    )
    other_client_user = User(name="Gus Globex", email="gus@globex.test", role=ROLE_CLIENT, client_company_id=globex.id)
    bob = User(name="Bob Stagehand", email="bob@crew.test", role=ROLE_EMPLOYEE)
    ana = User(name="Ana Rigger", email="ana@crew.test", role=ROLE_EMPLOYEE)
    db.add_all([manager, crew_chief, other_chief, client_user, inactive_client, other_client_user, bob, ana])
    db.flush()

    job = Job(client_id=acme.id, name="Convention Center Load-In", po_number="PO-7731")
    db.add(job)
    db.flush()

    shift = Shift(
        job_id=job.id,
        date=SHIFT_DATE,
        start_time=time(9, 0),
        end_time=time(17, 0),
        location="Hall B",
        requested_workers=2,
        crew_chief_id=crew_chief.id,
        status="InProgress",
    )
    db.add(shift)
    db.flush()

    bob_assignment = AssignedPersonnel(shift_id=shift.id, employee_id=bob.id, role_code="SH", status=CLOCK_SHIFT_ENDED)
    ana_assignment = AssignedPersonnel(shift_id=shift.id, employee_id=ana.id, role_code="RG", status=CLOCK_SHIFT_ENDED)
    db.add_all([bob_assignment, ana_assignment])
    db.flush()

    db.add_all([
        # 3h + 4h
        TimeEntry(assigned_personnel_id=bob_assignment.id, entry_number=1, clock_in=utc(9), clock_out=utc(12)),
        TimeEntry(assigned_personnel_id=bob_assignment.id, entry_number=2, clock_in=utc(13), clock_out=utc(17)),
        # 8h
        TimeEntry(assigned_personnel_id=ana_assignment.id, entry_number=1, clock_in=utc(9), clock_out=utc(17)),
    ])
    db.commit()

    return SimpleNamespace(
        acme=acme,
        globex=globex,
        job=job,
        shift=shift,
        manager=manager,
        crew_chief=crew_chief,
        other_chief=other_chief,
        client_user=client_user,
        inactive_client=inactive_client,
        other_client_user=other_client_user,
        bob=bob,
        ana=ana,
        bob_assignment=bob_assignment,
        ana_assignment=ana_assignment,
    )


@pytest.fixture()
def signature_png():
    return make_png()


@pytest.fixture()
def signature_data_url(signature_png):
    return "data:image/png;base64," + base64.b64encode(signature_png).decode("ascii")


@pytest.fixture()
def sent_emails():
    return []


@pytest.fixture()
def notifier(session_factory, sent_emails):
    return NotificationDispatcher(
        session_factory=session_factory,
        mailer=lambda to, subject, body: sent_emails.append((to, subject, body)),
    )


@pytest.fixture()
def client(session_factory, notifier):
    from crewsheet.main import app

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_dispatcher] = lambda: notifier
    app.state.limiter.reset()
    yield TestClient(app)
    app.dependency_overrides.clear()


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(str(user.id), user.role)}"}
