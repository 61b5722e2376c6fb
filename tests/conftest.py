"""
Shared pytest fixtures for the Great Loom test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_* factories: reference data and rules written straight to the DB
    - tuesday_craft: the "Tuesday Craft" rule in Hall A used across suites
"""

from datetime import date, time

import pytest

from greatloom import create_app
from greatloom.models import db as _db

# Monday. A six-week window from here covers Tuesdays 01-07 … 02-11.
LOOM_TODAY = date(2025, 1, 6)
SIX_WEEKS_END = date(2025, 2, 17)
TUESDAYS = [date(2025, 1, 7), date(2025, 1, 14), date(2025, 1, 21),
            date(2025, 1, 28), date(2025, 2, 4), date(2025, 2, 11)]


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


def _t(value):
    return value if isinstance(value, time) else time.fromisoformat(value)


@pytest.fixture()
def make_venue():
    from greatloom.models.reference import Venue

    def _make(name="Hall A", address="1 Loom Street"):
        venue = Venue(name=name, address=address)
        _db.session.add(venue)
        _db.session.commit()
        return venue
    return _make


@pytest.fixture()
def make_vehicle():
    from greatloom.models.reference import Vehicle

    def _make(label="Bus 1", seats=10):
        vehicle = Vehicle(label=label, seats=seats)
        _db.session.add(vehicle)
        _db.session.commit()
        return vehicle
    return _make


@pytest.fixture()
def make_participant():
    from greatloom.models.reference import Participant

    def _make(first_name="Ada", last_name="Lovelace", supervision_multiplier=1.0):
        participant = Participant(first_name=first_name, last_name=last_name,
                                  supervision_multiplier=supervision_multiplier)
        _db.session.add(participant)
        _db.session.commit()
        return participant
    return _make


@pytest.fixture()
def make_staff():
    from greatloom.models.reference import Staff

    def _make(first_name="Sam", last_name="Carer"):
        member = Staff(first_name=first_name, last_name=last_name)
        _db.session.add(member)
        _db.session.commit()
        return member
    return _make


@pytest.fixture()
def make_rule():
    """Create a ProgramRule directly (no conflict check, no audit)."""
    from greatloom.models.rules import ProgramRule

    def _make(name="Tuesday Craft", *, days=(1,), start="10:00", end="12:00",
              start_date=LOOM_TODAY, end_date=None, venue=None, vehicle=None,
              pattern="weekly", week_in_cycle=1, cycle_anchor=None, active=True):
        rule = ProgramRule(
            name=name,
            description=f"{name} program",
            pattern=pattern,
            days_of_week=list(days),
            week_in_cycle=week_in_cycle,
            cycle_anchor=cycle_anchor,
            start_time=_t(start),
            end_time=_t(end),
            start_date=start_date,
            end_date=end_date,
            venue_id=venue.id if venue is not None else None,
            default_vehicle_id=vehicle.id if vehicle is not None else None,
            active=active,
        )
        _db.session.add(rule)
        _db.session.commit()
        return rule
    return _make


@pytest.fixture()
def enrol():
    from greatloom.models.rules import ParticipantScheduleRule

    def _make(rule, participant, *, start_date=None, end_date=None,
              pickup_required=True, dropoff_required=True):
        row = ParticipantScheduleRule(
            program_rule_id=rule.id,
            participant_id=participant.id,
            start_date=start_date or rule.start_date,
            end_date=end_date,
            pickup_required=pickup_required,
            dropoff_required=dropoff_required,
        )
        _db.session.add(row)
        _db.session.commit()
        return row
    return _make


@pytest.fixture()
def roster():
    from greatloom.models.rules import StaffRosterRule

    def _make(rule, staff, *, role="lead", start_date=None, end_date=None):
        row = StaffRosterRule(
            program_rule_id=rule.id,
            staff_id=staff.id,
            role=role,
            start_date=start_date or rule.start_date,
            end_date=end_date,
        )
        _db.session.add(row)
        _db.session.commit()
        return row
    return _make


@pytest.fixture()
def hall_a(make_venue):
    return make_venue("Hall A")


@pytest.fixture()
def tuesday_craft(make_rule, hall_a):
    """Tuesdays 10:00–12:00 at Hall A, starting Monday 2025-01-06."""
    return make_rule("Tuesday Craft", days=(1,), start="10:00", end="12:00", venue=hall_a)


@pytest.fixture()
def project():
    """Run one projector pass over ``[today, today + weeks)``."""
    from datetime import timedelta

    from greatloom.services.projector import Projector

    def _project(today=LOOM_TODAY, weeks=6, **kwargs):
        return Projector(today=today).project(today, today + timedelta(weeks=weeks), **kwargs)
    return _project


def live_instances(rule_id=None):
    """All live instances ordered by date."""
    from sqlalchemy import select

    from greatloom.models.loom import LoomInstance

    stmt = select(LoomInstance).order_by(LoomInstance.instance_date)
    if rule_id is not None:
        stmt = stmt.where(LoomInstance.source_rule_id == rule_id)
    return _db.session.execute(stmt).scalars().all()


@pytest.fixture()
def instances():
    return live_instances
