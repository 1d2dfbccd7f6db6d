from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session

from database import Base
from ip_blocks import FailureCounter, register_failure, reset_counters
from models import Notification, NotificationType, User
from schemas import IpBlockIn, IpBlockUpdate
from services import IpBlockService


WINDOW = timedelta(minutes=5)
T0 = datetime(2024, 6, 1, 10, 0)


def _session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    session = Session(engine)
    session.add(User(username="admin", is_admin=True))
    session.add(User(username="bob"))
    session.commit()
    return session


def test_register_failure_counts_within_window():
    state = register_failure(FailureCounter(), T0, WINDOW)
    state = register_failure(state, T0 + timedelta(minutes=4), WINDOW)
    assert state == FailureCounter(attempts=2, last_failed_at=T0 + timedelta(minutes=4))


def test_register_failure_restarts_after_window():
    state = FailureCounter(attempts=2, last_failed_at=T0)
    state = register_failure(state, T0 + WINDOW, WINDOW)
    assert state.attempts == 1


def test_reset_counters_returns_empty_state():
    assert reset_counters() == FailureCounter(attempts=0, last_failed_at=None)


def test_third_unknown_user_failure_blocks_and_alerts_admins():
    with _session() as session:
        service = IpBlockService(session)

        service.register_unknown_user_failure("10.0.0.1", now=T0)
        service.register_unknown_user_failure("10.0.0.1", now=T0 + timedelta(minutes=1))
        assert not service.is_blocked("10.0.0.1")

        block = service.register_unknown_user_failure(
            "10.0.0.1", now=T0 + timedelta(minutes=2)
        )

        assert block.is_blocked
        assert block.unknown_user_failed_attempts == 3
        assert block.blocked_at == T0 + timedelta(minutes=2)
        assert service.is_blocked("10.0.0.1")

        alerts = session.scalars(select(Notification)).all()
        assert len(alerts) == 1
        assert alerts[0].type == NotificationType.system_alert
        assert alerts[0].trigger_event_key == "setup:ip-blocks?focus=10.0.0.1"
        admin_id = session.scalar(select(User.id).where(User.username == "admin"))
        assert alerts[0].owner_user_id == admin_id


def test_slow_failures_never_reach_threshold():
    with _session() as session:
        service = IpBlockService(session)
        for minutes in (0, 6, 12, 18):
            block = service.register_unknown_user_failure(
                "10.0.0.2", now=T0 + timedelta(minutes=minutes)
            )
        assert block.unknown_user_failed_attempts == 1
        assert not block.is_blocked


def test_blank_address_is_ignored():
    with _session() as session:
        assert IpBlockService(session).register_unknown_user_failure("  ") is None


def test_manual_block_lifecycle():
    with _session() as session:
        service = IpBlockService(session)
        block = service.create(IpBlockIn(ip_address=" 192.168.1.7 ", reason="abuse"), now=T0)
        assert block.ip_address == "192.168.1.7"
        assert block.is_blocked and block.block_reason == "abuse"

        with pytest.raises(ValueError, match="already exists"):
            service.create(IpBlockIn(ip_address="192.168.1.7"))

        service.unblock(block.id)
        assert not service.is_blocked("192.168.1.7")
        assert block.blocked_at is None and block.block_reason is None

        service.update(block.id, IpBlockUpdate(is_blocked=True, reason="again"), now=T0)
        assert service.is_blocked("192.168.1.7")

        assert len(service.list()) == 1
        service.delete(block.id)
        assert service.list() == []
        with pytest.raises(ValueError, match="not found"):
            service.get(block.id)


def test_reset_counters_clears_attempts_but_keeps_block():
    with _session() as session:
        service = IpBlockService(session)
        for minutes in (0, 1, 2):
            block = service.register_unknown_user_failure(
                "10.0.0.3", now=T0 + timedelta(minutes=minutes)
            )

        service.reset_counters(block.id)

        assert block.unknown_user_failed_attempts == 0
        assert block.unknown_user_last_failed_at is None
        assert block.is_blocked


def test_block_by_address_creates_entry():
    with _session() as session:
        service = IpBlockService(session)
        block = service.block_by_address("172.16.0.9", reason="scanner", now=T0)
        assert block.id is not None
        assert service.list(only_blocked=True)[0].ip_address == "172.16.0.9"
