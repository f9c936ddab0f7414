from __future__ import annotations

import threading
import time
from datetime import timedelta

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from huddle import api, crud
from huddle.database import use_immediate_transactions
from huddle.models import Base, EventRSVP, Profile
from huddle.utils import utcnow


def _file_engine(tmp_path):
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'huddle.db'}",
        connect_args={"check_same_thread": False, "timeout": 15},
        future=True,
    )
    use_immediate_transactions(engine)
    Base.metadata.create_all(bind=engine)
    return engine


def test_concurrent_going_rsvps_cannot_oversell(tmp_path, monkeypatch):
    engine = _file_engine(tmp_path)
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    with factory.begin() as setup:
        host = crud.create_profile(setup, full_name="Host")
        first = crud.create_profile(setup, full_name="First Guest")
        second = crud.create_profile(setup, full_name="Second Guest")
        start = (utcnow() + timedelta(days=3)).replace(microsecond=0)
        event = crud.create_event(
            setup,
            creator=host,
            title="One seat",
            date=start.strftime("%Y-%m-%dT%H:%M:%SZ"),
            max_capacity=1,
        )
        event_id, guest_ids = event.id, {"first": first.id, "second": second.id}

    counted = crud.count_going

    def slow_count(session, target):
        # Widen the window between the capacity read and the insert.
        value = counted(session, target)
        time.sleep(0.3)
        return value

    monkeypatch.setattr(crud, "count_going", slow_count)

    results: dict[str, str] = {}
    start_together = threading.Barrier(2)

    def attempt(name: str) -> None:
        start_together.wait()
        session = factory()
        try:
            profile = session.get(Profile, guest_ids[name])
            outcome = api._submit_rsvp(
                session, event_id=event_id, profile=profile, desired="going"
            )
            session.commit()
            results[name] = outcome["result"]
        except api.EventFullError:
            session.rollback()
            results[name] = "full"
        finally:
            session.close()

    threads = [threading.Thread(target=attempt, args=(name,)) for name in guest_ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(results.values()) == ["applied", "full"]
    with factory() as check:
        going = check.scalars(
            select(EventRSVP).where(
                EventRSVP.event_id == event_id, EventRSVP.status == "going"
            )
        ).all()
    assert len(going) == 1
    engine.dispose()


def test_autocommit_connections_skip_the_immediate_begin(tmp_path):
    engine = _file_engine(tmp_path)

    with engine.connect() as connection:
        connection.execution_options(isolation_level="AUTOCOMMIT").exec_driver_sql(
            "VACUUM"
        )

    with engine.begin() as connection:
        assert connection.exec_driver_sql("SELECT 1").scalar() == 1
    engine.dispose()
