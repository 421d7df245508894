"""Thread-safe stop and finish handshake for a viewer loop."""

from __future__ import annotations

import threading


class ViewerControl:
    """Flags through which other threads pause or end a viewer loop.

    A fresh control reports the viewer as finished and stopped, as when no
    loop runs; ``running=True`` starts it in the state of a running loop.
    """

    def __init__(self, running: bool = False):
        self._finish_lock = threading.Lock()
        self._stop_lock = threading.Lock()
        self._finish_requested = False
        self._finished = not running
        self._stopped = not running
        self._stop_requested = False

    def request_finish(self) -> None:
        """Ask the loop to end."""
        with self._finish_lock:
            self._finish_requested = True

    def check_finish(self) -> bool:
        """Whether the loop has been asked to end."""
        with self._finish_lock:
            return self._finish_requested

    def set_finish(self) -> None:
        """Mark the loop as ended."""
        with self._finish_lock:
            self._finished = True

    def is_finished(self) -> bool:
        """Whether the loop has ended."""
        with self._finish_lock:
            return self._finished

    def request_stop(self) -> None:
        """Ask the loop to pause, unless it is paused already."""
        with self._stop_lock:
            if not self._stopped:
                self._stop_requested = True

    def is_stopped(self) -> bool:
        """Whether the loop is paused."""
        with self._stop_lock:
            return self._stopped

    def stop(self) -> bool:
        """Pause if a pause was requested and no finish is pending.

        Returns True when the loop has just paused.
        """
        with self._stop_lock, self._finish_lock:
            if self._finish_requested:
                return False
            if self._stop_requested:
                self._stopped = True
                self._stop_requested = False
                return True
            return False

    def release(self) -> None:
        """Let a paused loop continue."""
        with self._stop_lock:
            self._stopped = False