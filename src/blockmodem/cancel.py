"""
Cancellation signal shared between a transfer and its controller.
"""

import threading


class CancelToken:
    """Thread-safe flag polled by the engine at every suspension point"""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        """Request cancellation of the running transfer"""
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def __repr__(self) -> str:
        return f"CancelToken(cancelled={self.is_cancelled()})"
