"""Provider health tracking.

A provider that fails is taken out of rotation for a cooldown period and
retried lazily: the first availability check after the cooldown has
elapsed lets one real request through. There is no background checker.
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from asogate.app.core.logging import get_log_context, get_logger

logger = get_logger(__name__)


@dataclass
class ProviderHealth:
    """Availability of one provider."""

    available: bool = True
    failed_at: Optional[float] = None


class ProviderHealthTracker:
    """Tracks availability for named providers.

    Usage:
        tracker = ProviderHealthTracker(cooldown_seconds=600)
        if tracker.is_available("aso-scores"):
            try:
                ...
            except Exception:
                tracker.mark_failed("aso-scores")
    """

    def __init__(
        self,
        cooldown_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the tracker.

        Args:
            cooldown_seconds: How long a failed provider is skipped (default: 600)
            clock: Monotonic time source, injectable for tests
        """
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        self._states: Dict[str, ProviderHealth] = {}

    def is_available(self, provider_name: str) -> bool:
        """Check whether requests may be sent to the provider.

        Unknown providers are available. A failed provider becomes available
        again once the cooldown has elapsed since its failure.
        """
        state = self._states.setdefault(provider_name, ProviderHealth())
        if state.available:
            return True

        if state.failed_at is not None and (
            self._clock() - state.failed_at >= self.cooldown_seconds
        ):
            state.available = True
            state.failed_at = None
            logger.info(
                f"Provider '{provider_name}' cooldown elapsed, probing again",
                extra=get_log_context(provider=provider_name),
            )
            return True
        return False

    def mark_failed(self, provider_name: str, error: Optional[BaseException] = None) -> None:
        """Mark a provider unavailable, starting its cooldown.

        Only the Available -> Unavailable transition is logged.
        """
        state = self._states.setdefault(provider_name, ProviderHealth())
        if state.available:
            logger.warning(
                f"Provider '{provider_name}' unavailable, using fallback for "
                f"{self.cooldown_seconds:.0f}s"
                + (f": {type(error).__name__}: {error}" if error is not None else ""),
                extra=get_log_context(provider=provider_name),
            )
        state.available = False
        state.failed_at = self._clock()

    def get_state(self, provider_name: str) -> ProviderHealth:
        state = self._states.get(provider_name, ProviderHealth())
        return ProviderHealth(available=state.available, failed_at=state.failed_at)

    def get_all_status(self) -> Dict[str, bool]:
        """Get availability for all tracked providers."""
        return {name: state.available for name, state in self._states.items()}


_health_tracker: Optional[ProviderHealthTracker] = None


def get_health_tracker() -> ProviderHealthTracker:
    """Get or create the process-wide health tracker."""
    global _health_tracker
    if _health_tracker is None:
        from asogate.app.core.config import settings

        _health_tracker = ProviderHealthTracker(
            cooldown_seconds=settings.scoring_cooldown_seconds
        )
    return _health_tracker


def reset_health_tracker() -> None:
    """Reset the global health tracker (for testing)."""
    global _health_tracker
    _health_tracker = None
