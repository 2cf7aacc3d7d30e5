from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from threading import Lock
from typing import Dict


@dataclass
class LoyaltySnapshot:
    earns: Dict[str, int]
    redemptions: Dict[str, int]
    programs: Dict[str, int]
    pass_sync: Dict[str, int]

    def as_dict(self) -> Dict[str, object]:
        return {
            "earns": dict(self.earns),
            "redemptions": dict(self.redemptions),
            "programs": dict(self.programs),
            "pass_sync": dict(self.pass_sync),
        }


class LoyaltyObservabilityStore:
    """Collect earn/redemption telemetry for dashboards and alerting."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._earns: Dict[str, int] = defaultdict(int)
        self._redemptions: Dict[str, int] = defaultdict(int)
        self._programs: Dict[str, int] = defaultdict(int)
        self._pass_sync: Dict[str, int] = defaultdict(int)

    def record_earn(self, outcome: str) -> None:
        with self._lock:
            self._earns["total"] += 1
            self._earns[outcome] += 1

    def record_earn_conflict_retry(self) -> None:
        with self._lock:
            self._earns["retries"] += 1

    def record_redemption(self, outcome: str) -> None:
        with self._lock:
            self._redemptions["total"] += 1
            self._redemptions[outcome] += 1

    def record_program_event(self, event: str) -> None:
        with self._lock:
            self._programs[event] += 1

    def record_pass_sync(self, outcome: str) -> None:
        with self._lock:
            self._pass_sync[outcome] += 1

    def snapshot(self) -> LoyaltySnapshot:
        with self._lock:
            return LoyaltySnapshot(
                earns=dict(self._earns),
                redemptions=dict(self._redemptions),
                programs=dict(self._programs),
                pass_sync=dict(self._pass_sync),
            )

    def reset(self) -> None:
        with self._lock:
            self._earns.clear()
            self._redemptions.clear()
            self._programs.clear()
            self._pass_sync.clear()


_STORE = LoyaltyObservabilityStore()


def get_loyalty_store() -> LoyaltyObservabilityStore:
    return _STORE


__all__ = ["get_loyalty_store", "LoyaltyObservabilityStore", "LoyaltySnapshot"]
