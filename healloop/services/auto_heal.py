"""
Auto-Heal Coordinator

Turns a qualifying pain signal into a pending heal request - the prompt for
the next generation cycle.

    PainSignal ──► enabled? ──► generating? ──► critical? ──► cooldown? ──► PendingHealRequest
                     │no          │yes            │no            │within
                     └────────────┴───────────────┴──────────────┴──► ignored

At most one heal per cooldown window. Healing is fire-and-forget: it does not
promise every failure gets fixed, only that heals cannot storm the system.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from healloop.core.config import settings
from healloop.core.logging_config import logger
from healloop.services.pain_detector import PainSignal, format_for_ai


@dataclass
class AutoHealConfig:
    """Configuration for auto-heal behaviour"""
    enabled: bool = field(default_factory=lambda: settings.AUTO_HEAL_ENABLED)
    cooldown_seconds: float = field(default_factory=lambda: settings.AUTO_HEAL_COOLDOWN_SECONDS)
    critical_only: bool = True


@dataclass(frozen=True)
class PendingHealRequest:
    error: str
    suggestion: str
    signal_id: str
    signal_type: str
    created_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error,
            "suggestion": self.suggestion,
            "signal_id": self.signal_id,
            "signal_type": self.signal_type,
            "created_at": self.created_at,
        }


class AutoHealCoordinator:
    """
    Rate-limited gate between failure detection and regeneration.

    `on_heal` receives every emitted request; whoever starts the next
    generation cycle subscribes there.
    """

    def __init__(
        self,
        project_id: str = "default",
        config: Optional[AutoHealConfig] = None,
        on_heal: Optional[Callable[[PendingHealRequest], None]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.project_id = project_id
        self.config = config or AutoHealConfig()
        self.on_heal = on_heal
        self._clock = clock

        self._last_trigger_at: Optional[float] = None
        self.pending: Optional[PendingHealRequest] = None
        self.triggered_count = 0
        self.suppressed_count = 0

    def _in_cooldown(self, now: float) -> bool:
        return (
            self._last_trigger_at is not None
            and (now - self._last_trigger_at) < self.config.cooldown_seconds
        )

    def _skip(self, reason: str, signal: PainSignal) -> None:
        self.suppressed_count += 1
        logger.debug(
            f"[AutoHeal:{self.project_id}] Ignoring {signal.type.value}: {reason}",
            extra={"signal_id": signal.id, "skip_reason": reason}
        )

    def submit(self, signal: PainSignal, is_generating: bool) -> Optional[PendingHealRequest]:
        """Return a heal request if the signal qualifies, otherwise None"""
        if not self.config.enabled:
            self._skip("auto-heal disabled", signal)
            return None
        if is_generating:
            self._skip("generation in flight", signal)
            return None
        if self.config.critical_only and not signal.is_critical:
            self._skip(f"severity {signal.severity.value}", signal)
            return None

        now = self._clock()
        if self._in_cooldown(now):
            self._skip("cooldown", signal)
            return None

        self._last_trigger_at = now
        request = PendingHealRequest(
            error=format_for_ai(signal),
            suggestion=signal.suggestion or "",
            signal_id=signal.id,
            signal_type=signal.type.value,
            created_at=now,
        )
        self.pending = request
        self.triggered_count += 1

        logger.log_heal_event(self.project_id, True, reason=signal.type.value, signal_id=signal.id)

        if self.on_heal is not None:
            self.on_heal(request)
        return request

    def take_pending(self) -> Optional[PendingHealRequest]:
        """Hand over the pending request exactly once"""
        request, self.pending = self.pending, None
        return request

    def reset_cooldown(self) -> None:
        self._last_trigger_at = None

    def get_status(self) -> Dict[str, Any]:
        return {
            "enabled": self.config.enabled,
            "cooldown_seconds": self.config.cooldown_seconds,
            "last_trigger_at": self._last_trigger_at,
            "triggered": self.triggered_count,
            "suppressed": self.suppressed_count,
            "pending": self.pending.to_dict() if self.pending else None,
        }
