from __future__ import annotations

from gateflow.config import SwarmConfig


class ConcurrencyManager:
    """Per-provider slot counter.

    ``acquire`` always increments; callers are expected to ask
    ``can_acquire`` first unless they deliberately overrun the limit.
    """

    def __init__(self, config: SwarmConfig | None = None) -> None:
        config = config or SwarmConfig()
        self.default_limit = config.default_concurrency
        self.limits: dict[str, int] = dict(config.provider_concurrency)
        self._active: dict[str, int] = {}

    def get_limit(self, provider: str) -> int:
        return self.limits.get(provider, self.default_limit)

    def get_active(self, provider: str) -> int:
        return self._active.get(provider, 0)

    def can_acquire(self, provider: str) -> bool:
        return self.get_active(provider) < self.get_limit(provider)

    def acquire(self, provider: str) -> None:
        self._active[provider] = self.get_active(provider) + 1

    def release(self, provider: str) -> None:
        self._active[provider] = max(0, self.get_active(provider) - 1)

    def snapshot(self) -> dict[str, dict[str, int]]:
        providers = sorted(set(self._active) | set(self.limits))
        return {
            provider: {"active": self.get_active(provider), "limit": self.get_limit(provider)}
            for provider in providers
        }
