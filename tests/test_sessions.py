from datetime import timedelta

import pytest

from insider_threat_monitor import EngineConfig
from insider_threat_monitor.sessions import SessionManager


@pytest.fixture
def ended():
    return []


@pytest.fixture
def sessions(clock, timers, ended):
    return SessionManager(
        EngineConfig(session_timeout=timedelta(minutes=30)),
        clock=clock,
        timer_factory=timers,
        on_session_end=lambda session, reason: ended.append((session.login_ref, reason)),
    )


def test_start_session_schedules_idle_check(sessions, timers, clock):
    session = sessions.start_session("emp-1", "login-1")

    timer = timers.named("idle-check-emp-1")
    assert timer.started
    assert timer.interval == 60
    assert session.login_time == clock.now
    assert session.last_activity_time == clock.now
    assert sessions.get_session("emp-1") is session


def test_idle_session_is_logged_out_exactly_once(sessions, timers, clock, ended):
    sessions.start_session("emp-1", "login-1")
    timer = timers.named("idle-check-emp-1")

    clock.advance(minutes=31)
    assert sessions.check_idle("emp-1") is True
    assert sessions.check_idle("emp-1") is False
    timer.fire()

    assert ended == [("login-1", "idle_timeout")]
    assert timer.cancelled
    assert sessions.get_session("emp-1") is None


def test_activity_keeps_session_alive(sessions, clock, ended):
    sessions.start_session("emp-1", "login-1")

    clock.advance(minutes=29)
    assert sessions.touch_activity("emp-1")
    clock.advance(minutes=29)

    assert sessions.check_idle("emp-1") is False
    assert ended == []


def test_idle_check_before_timeout_does_nothing(sessions, clock, ended):
    sessions.start_session("emp-1", "login-1")
    clock.advance(minutes=29, seconds=59)

    assert sessions.check_idle("emp-1") is False
    assert sessions.get_session("emp-1") is not None


def test_touch_without_session_is_a_noop(sessions):
    assert sessions.touch_activity("emp-404") is False


def test_logout_cancels_idle_check(sessions, timers, ended):
    sessions.start_session("emp-1", "login-1")

    ended_session = sessions.end_session("emp-1")

    assert ended_session.login_ref == "login-1"
    assert timers.named("idle-check-emp-1").cancelled
    assert ended == [("login-1", "logout")]
    assert sessions.end_session("emp-1") is None
    assert ended == [("login-1", "logout")]


def test_second_login_replaces_previous_session(sessions, timers, ended):
    sessions.start_session("emp-1", "login-1")
    first_timer = timers.named("idle-check-emp-1")

    session = sessions.start_session("emp-1", "login-2")

    assert session.login_ref == "login-2"
    assert first_timer.cancelled
    assert not timers.named("idle-check-emp-1").cancelled
    assert ended == [("login-1", "replaced")]
    assert [s.login_ref for s in sessions.active_sessions()] == ["login-2"]


def test_restarting_same_login_keeps_session(sessions, timers, ended):
    first = sessions.start_session("emp-1", "login-1")

    assert sessions.start_session("emp-1", "login-1") is first
    assert len(timers.timers) == 1
    assert ended == []


def test_stop_all_ends_every_session(sessions, ended):
    sessions.start_session("emp-1", "login-1")
    sessions.start_session("emp-2", "login-2")

    sessions.stop_all()

    assert sessions.active_sessions() == []
    assert sorted(ended) == [("login-1", "shutdown"), ("login-2", "shutdown")]
