"""Local heuristic signals: message frequency and keyword matching.

Both checks are synchronous and run in ~0ms. Message timestamps live in a
table of per-``(tenant_id, user_id)`` sliding windows that is pruned lazily
whenever a key is touched, plus an interval-gated sweep that evicts keys
whose newest timestamp has already left the window.
"""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from gatekeeper.detection.models import HeuristicSignal
from gatekeeper.logging import get_logger

if TYPE_CHECKING:
    from gatekeeper.detection.settings import ConfigProvider

log = get_logger("gatekeeper.detection.heuristics")

FREQUENCY_REASON = "User is sending messages too quickly"
KEYWORD_REASON = "Message contains suspicious keywords or patterns"

_FREQUENCY_SCORE = 0.60
_KEYWORD_SCORE = 0.65

RateKey = tuple[str, str]


def _monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass
class RateWindow:
    """Message timestamps (ms) for one user in one tenant."""

    timestamps: deque[float] = field(default_factory=deque)
    window_ms: int = 0

    def prune(self, now: float) -> None:
        cutoff = now - self.window_ms
        while self.timestamps and self.timestamps[0] <= cutoff:
            self.timestamps.popleft()

    def is_stale(self, now: float) -> bool:
        return not self.timestamps or self.timestamps[-1] <= now - self.window_ms


@dataclass
class HeuristicReport:
    """Signals raised for a single message."""

    signals: list[HeuristicSignal] = field(default_factory=list)

    @property
    def suspicious(self) -> bool:
        return any(s.decisive for s in self.signals)

    @property
    def reasons(self) -> list[str]:
        return [s.reason for s in self.signals]


def _frequency_signal() -> HeuristicSignal:
    return HeuristicSignal(
        name="message_frequency", reason=FREQUENCY_REASON, score=_FREQUENCY_SCORE
    )


def _keyword_signal() -> HeuristicSignal:
    return HeuristicSignal(name="suspicious_keyword", reason=KEYWORD_REASON, score=_KEYWORD_SCORE)


def aggregate_score(signals: list[HeuristicSignal]) -> float:
    """Aggregate signals into a single confidence.

    Uses the max signal score plus exponentially diminishing contributions
    from secondary signals, so many weak signals cannot add up to a High.
    """
    if not signals:
        return 0.0
    scores = sorted((s.score for s in signals), reverse=True)
    total = scores[0]
    for i, score in enumerate(scores[1:], 1):
        total += score * (0.3**i)
    return min(1.0, total)


class HeuristicEngine:
    """Per-tenant rate limiting and keyword matching."""

    def __init__(
        self,
        config_provider: ConfigProvider,
        *,
        sweep_interval_seconds: float = 60.0,
        clock: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            config_provider: Source of effective tenant settings.
            sweep_interval_seconds: Minimum time between stale-key sweeps.
            clock: Millisecond clock, monotonic by default.
        """
        self._config = config_provider
        self._sweep_interval_ms = sweep_interval_seconds * 1000
        self._clock = clock or _monotonic_ms
        self._windows: dict[RateKey, RateWindow] = {}
        self._last_sweep_at: float | None = None

    def evaluate_frequency(self, tenant_id: str, user_id: str) -> bool:
        """Record a message and check the user's rate.

        Returns:
            ``True`` if the number of messages inside the tenant's window,
            including this one, exceeds the tenant's threshold.
        """
        now = self._clock()
        settings = self._config.get_heuristic_settings(tenant_id)
        self._maybe_sweep(now)

        key = (tenant_id, user_id)
        window = self._windows.get(key)
        if window is None:
            window = RateWindow()
            self._windows[key] = window
        window.window_ms = settings.time_window_ms
        window.timestamps.append(now)
        window.prune(now)

        return len(window.timestamps) > settings.message_threshold

    def contains_keyword(self, tenant_id: str, content: str) -> bool:
        """Return ``True`` if ``content`` contains any configured keyword.

        Matching is a case-insensitive substring test. An empty keyword
        list never matches.
        """
        keywords = self._config.get_heuristic_settings(tenant_id).suspicious_keywords
        if not keywords:
            return False
        normalized = content.lower()
        return any(keyword in normalized for keyword in keywords)

    def analyze_message(self, tenant_id: str, user_id: str, content: str) -> HeuristicReport:
        """Run every message heuristic and collect the raised signals."""
        report = HeuristicReport()
        if self.evaluate_frequency(tenant_id, user_id):
            report.signals.append(_frequency_signal())
        if self.contains_keyword(tenant_id, content):
            report.signals.append(_keyword_signal())
        return report

    def analyze_join(self, tenant_id: str, user_id: str) -> HeuristicReport:
        """Run the heuristics that apply to a member join."""
        report = HeuristicReport()
        if self.evaluate_frequency(tenant_id, user_id):
            report.signals.append(_frequency_signal())
        return report

    def sweep(self, now: float | None = None) -> int:
        """Evict every key whose newest timestamp is outside its window.

        Returns:
            Number of evicted keys.
        """
        now = self._clock() if now is None else now
        self._last_sweep_at = now
        stale = [key for key, window in self._windows.items() if window.is_stale(now)]
        for key in stale:
            del self._windows[key]
        if stale:
            log.debug("rate_windows_swept", evicted=len(stale), remaining=len(self._windows))
        return len(stale)

    def _maybe_sweep(self, now: float) -> None:
        if self._last_sweep_at is None:
            self._last_sweep_at = now
            return
        if now - self._last_sweep_at >= self._sweep_interval_ms:
            self.sweep(now)

    def clear(self) -> None:
        """Drop all rate windows."""
        self._windows.clear()
        self._last_sweep_at = None

    def tracked_keys(self) -> int:
        """Number of ``(tenant_id, user_id)`` windows currently held."""
        return len(self._windows)
