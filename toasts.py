"""Transient, auto-dismissing user notifications."""
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Literal, Optional

logger = logging.getLogger(__name__)

ToastKind = Literal["default", "success", "error"]


@dataclass(frozen=True)
class Toast:
    id: int
    message: str
    kind: ToastKind
    created_at: datetime
    expires_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "message": self.message,
            "kind": self.kind,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }


class ToastCenter:
    def __init__(self, lifetime: float = 3.0, clock: Optional[Callable[[], datetime]] = None):
        self.lifetime = lifetime
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._toasts: List[Toast] = []
        self._ids = itertools.count(1)
        self._listeners: List[Callable[[Toast], None]] = []

    def subscribe(self, listener: Callable[[Toast], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def push(self, message: str, kind: ToastKind = "default") -> Toast:
        now = self._clock()
        toast = Toast(next(self._ids), message, kind, now, now + timedelta(seconds=self.lifetime))
        self._toasts.append(toast)
        if kind == "error":
            logger.info("Error toast: %s", message)
        for listener in list(self._listeners):
            try:
                listener(toast)
            except Exception:
                logger.exception("Toast listener failed")
        return toast

    def success(self, message: str) -> Toast:
        return self.push(message, "success")

    def error(self, message: str) -> Toast:
        return self.push(message, "error")

    def active(self) -> List[Toast]:
        now = self._clock()
        self._toasts = [t for t in self._toasts if t.expires_at > now]
        return list(self._toasts)

    def clear(self) -> None:
        self._toasts = []
