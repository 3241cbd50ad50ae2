import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

from signal_trader.config import SIGNAL_COOLDOWN_SECONDS

GRANTED = "granted"
BUSY = "busy"
COOLDOWN = "cooldown"


@dataclass
class BotSlot:
    """Admission state for one bot."""

    busy: bool = False
    cooldown_until: float = 0.0  # monotonic seconds
    admitted_at: Optional[float] = None


@dataclass(frozen=True)
class AdmissionResult:
    status: str
    wait_ms: int = 0

    @property
    def granted(self) -> bool:
        return self.status == GRANTED


class BotAdmissionGuard:
    """
    Per-bot single-flight gate with a post-processing cooldown.

    A bot has at most one admitted signal at a time. Busy and cooldown outcomes are
    returned immediately; nothing waits or queues. Check-and-set happens under one
    lock so two concurrent callers cannot both be granted.
    """

    def __init__(
        self,
        cooldown_seconds: float = SIGNAL_COOLDOWN_SECONDS,
        monotonic: Optional[Callable[[], float]] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.cooldown_seconds = cooldown_seconds
        self.monotonic = monotonic or time.monotonic
        self.logger = logger or logging.getLogger(__name__)
        self._slots: Dict[Any, BotSlot] = {}
        self._lock = threading.Lock()

    def _slot(self, bot_id: Any) -> BotSlot:
        slot = self._slots.get(bot_id)
        if slot is None:
            slot = self._slots[bot_id] = BotSlot()
        return slot

    def _remaining_ms(self, slot: BotSlot, now: float) -> int:
        remaining = slot.cooldown_until - now
        if remaining <= 0:
            return 0
        # Round up so callers never see 0 while still cooling down
        return max(1, int(remaining * 1000 + 0.999))

    def try_admit(self, bot_id: Any, respect_cooldown: bool = True) -> AdmissionResult:
        with self._lock:
            slot = self._slot(bot_id)
            now = self.monotonic()
            if slot.busy:
                return AdmissionResult(BUSY)
            if respect_cooldown:
                wait_ms = self._remaining_ms(slot, now)
                if wait_ms:
                    return AdmissionResult(COOLDOWN, wait_ms)
            slot.busy = True
            slot.admitted_at = now
            return AdmissionResult(GRANTED)

    def release(self, bot_id: Any, start_cooldown: bool = True) -> None:
        with self._lock:
            slot = self._slot(bot_id)
            if not slot.busy:
                self.logger.debug(f"Release for bot {bot_id} without admission")
            slot.busy = False
            slot.admitted_at = None
            if start_cooldown:
                slot.cooldown_until = self.monotonic() + self.cooldown_seconds

    def check_cooldown(self, bot_id: Any) -> Tuple[bool, int]:
        """Return (ready, wait_ms) without admitting."""
        with self._lock:
            slot = self._slots.get(bot_id)
            if slot is None:
                return True, 0
            wait_ms = self._remaining_ms(slot, self.monotonic())
            return wait_ms == 0, wait_ms

    def is_busy(self, bot_id: Any) -> bool:
        with self._lock:
            slot = self._slots.get(bot_id)
            return bool(slot and slot.busy)
