"""Blocking primitive used to park a thread until the stack wakes it."""

from __future__ import annotations

import threading


class Wait:
    """Puts one thread to sleep until another wakes it or the wait is closed.

    A wake-up that arrives before anyone sleeps is remembered, so the next
    :meth:`sleep_on` returns at once. Repeated wake-ups before a sleep count
    only once.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._notified = False
        self._dead = False
        self._sleeping = False

    @property
    def closed(self) -> bool:
        """True once :meth:`close` has been called."""
        return self._dead

    def wake_up(self) -> bool:
        """Wake the sleeper, or remember the wake-up. False if closed."""
        with self._cond:
            if self._dead:
                return False
            if not self._notified:
                self._notified = True
                if self._sleeping:
                    self._cond.notify()
            return True

    def sleep_on(self) -> bool:
        """Block until woken. Returns False if the wait is or becomes closed."""
        with self._cond:
            if self._dead:
                return False
            self._sleeping = True
            while not (self._notified or self._dead):
                self._cond.wait()
            self._notified = False
            self._sleeping = False
            return not self._dead

    def close(self) -> None:
        """Mark the wait dead and release every sleeper."""
        with self._cond:
            if self._dead:
                return
            self._dead = True
            self._cond.notify_all()