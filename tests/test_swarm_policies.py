from gateflow.config import SwarmConfig
from gateflow.models import TrackedSession
from gateflow.swarm.concurrency import ConcurrencyManager
from gateflow.swarm.staleness import StalenessDetector


def test_provider_limit_blocks_then_frees() -> None:
    manager = ConcurrencyManager(SwarmConfig(provider_concurrency={"p": 2}))

    manager.acquire("p")
    manager.acquire("p")
    assert manager.can_acquire("p") is False

    manager.release("p")
    assert manager.can_acquire("p") is True
    assert manager.get_active("p") == 1


def test_unknown_provider_uses_default_limit() -> None:
    manager = ConcurrencyManager()

    for _ in range(4):
        assert manager.can_acquire("unknown") is True
        manager.acquire("unknown")

    assert manager.can_acquire("unknown") is False
    assert manager.get_limit("unknown") == 4


def test_release_never_goes_negative() -> None:
    manager = ConcurrencyManager(SwarmConfig(default_concurrency=1))

    manager.release("p")
    manager.release("p")

    assert manager.get_active("p") == 0
    assert manager.can_acquire("p") is True


def test_acquire_is_unconditional_and_snapshot_reports_it() -> None:
    manager = ConcurrencyManager(SwarmConfig(default_concurrency=1, provider_concurrency={"q": 3}))

    manager.acquire("p")
    manager.acquire("p")

    assert manager.get_active("p") == 2
    assert manager.snapshot() == {
        "p": {"active": 2, "limit": 1},
        "q": {"active": 0, "limit": 3},
    }


def _session(now: float, *, started_ago: float, idle: float, messages: int) -> TrackedSession:
    return TrackedSession(
        session_id="ses-1",
        task_id="t1",
        agent="executor",
        provider="p",
        status="running",
        started_at=now - started_ago,
        last_message_count=messages,
        last_progress_at=now - idle,
    )


def test_session_without_messages_goes_stale() -> None:
    detector = StalenessDetector()
    now = 1_000_000.0

    assert detector.check(_session(now, started_ago=120.0, idle=181.0, messages=0), now) == "stale"
    assert detector.check(_session(now, started_ago=120.0, idle=179.0, messages=0), now) == "active"


def test_session_with_messages_goes_stuck() -> None:
    detector = StalenessDetector()
    now = 1_000_000.0

    session = _session(now, started_ago=700.0, idle=601.0, messages=5)

    assert detector.check(session, now) == "stuck"
    assert detector.check(_session(now, started_ago=700.0, idle=599.0, messages=5), now) == "active"


def test_startup_grace_period_wins() -> None:
    detector = StalenessDetector(SwarmConfig(stale_timeout_seconds=0.0, allow_sub_minimum=True))
    now = 5_000.0

    assert detector.check(_session(now, started_ago=29.0, idle=10_000.0, messages=0), now) == "active"


def test_classification_is_monotonic_in_idle_time() -> None:
    detector = StalenessDetector()
    now = 10_000.0
    seen: list[str] = []
    for idle in range(0, 1_000, 25):
        verdict = detector.check(_session(now, started_ago=2_000.0, idle=float(idle), messages=0), now)
        seen.append(verdict)

    first_stale = seen.index("stale")
    assert all(verdict == "stale" for verdict in seen[first_stale:])


def test_thresholds_are_clamped_unless_overridden() -> None:
    clamped = StalenessDetector(SwarmConfig(stale_timeout_seconds=5.0, progress_timeout_seconds=10.0))
    trusted = StalenessDetector(
        SwarmConfig(stale_timeout_seconds=5.0, progress_timeout_seconds=10.0, allow_sub_minimum=True)
    )
    now = 1_000.0
    session = _session(now, started_ago=120.0, idle=30.0, messages=0)

    assert clamped.stale_timeout == 60.0
    assert clamped.progress_timeout == 60.0
    assert clamped.check(session, now) == "active"
    assert trusted.check(session, now) == "stale"
