from __future__ import annotations

from gateflow.config import SwarmConfig
from gateflow.models import Staleness, TrackedSession

STARTUP_GRACE_SECONDS = 30.0
MIN_THRESHOLD_SECONDS = 60.0


class StalenessDetector:
    """Classifies a running session from its cached progress snapshot.

    ``stale`` means the session never produced a message within the stale
    threshold; ``stuck`` means it produced some and then went quiet for longer
    than the progress threshold. Sessions younger than the startup grace
    period are always ``active``.
    """

    def __init__(self, config: SwarmConfig | None = None) -> None:
        config = config or SwarmConfig()
        floor = 0.0 if config.allow_sub_minimum else MIN_THRESHOLD_SECONDS
        self.stale_timeout = max(floor, float(config.stale_timeout_seconds))
        self.progress_timeout = max(floor, float(config.progress_timeout_seconds))

    def check(self, session: TrackedSession, now: float) -> Staleness:
        if now - session.started_at < STARTUP_GRACE_SECONDS:
            return "active"
        idle = now - session.last_progress_at
        if session.last_message_count == 0 and idle > self.stale_timeout:
            return "stale"
        if session.last_message_count > 0 and idle > self.progress_timeout:
            return "stuck"
        return "active"
