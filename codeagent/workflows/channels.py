from __future__ import annotations

import threading
from typing import Any, Optional


class ReplyChannel:
    """Single-use slot a blocked caller waits on.

    The first ``send`` wins; later sends are refused. A caller that times
    out can race the producer by sending its own timeout value.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._value: Any = None

    def send(self, value: Any) -> bool:
        with self._lock:
            if self._event.is_set():
                return False
            self._value = value
            self._event.set()
            return True

    def receive(self, timeout: Optional[float] = None) -> Any:
        if not self._event.wait(timeout):
            raise TimeoutError(f"no reply within {timeout}s")
        return self._value

    @property
    def done(self) -> bool:
        return self._event.is_set()
