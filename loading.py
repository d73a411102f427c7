"""Loading flag with a minimum visible duration.

Fast operations never show the flag. Operations that are slow enough to show it keep
it visible until ``MIN_VISIBLE`` has passed since the start, so the indicator does not
flash. Operations slower than that clear it as soon as they finish.
"""

import asyncio
from typing import Optional

SHOW_DELAY = 0.1
MIN_VISIBLE = 1.0


class LoadingIndicator:
    def __init__(self, show_delay: float = SHOW_DELAY, min_visible: float = MIN_VISIBLE) -> None:
        self.show_delay = show_delay
        self.min_visible = min_visible
        self._visible = False
        self._active = False
        self._started_at = 0.0
        self._show_handle: Optional[asyncio.TimerHandle] = None
        self._hide_handle: Optional[asyncio.TimerHandle] = None

    @property
    def visible(self) -> bool:
        return self._visible

    @property
    def active(self) -> bool:
        return self._active

    def start(self) -> None:
        """Begin a loading episode; pending timers from the previous one are dropped."""
        self.cancel()
        loop = asyncio.get_running_loop()
        self._active = True
        self._started_at = loop.time()
        self._show_handle = loop.call_later(self.show_delay, self._show)

    def stop(self) -> None:
        if not self._active:
            return
        loop = asyncio.get_running_loop()
        elapsed = loop.time() - self._started_at
        self._cancel_show()
        self._active = False

        if elapsed < self.show_delay:
            self._visible = False
        elif elapsed < self.min_visible:
            self._visible = True
            self._hide_handle = loop.call_later(self.min_visible - elapsed, self._hide)
        else:
            self._visible = False

    def fail(self) -> None:
        """End the episode at once, without the minimum visible hold."""
        self.cancel()

    def cancel(self) -> None:
        self._cancel_show()
        if self._hide_handle is not None:
            self._hide_handle.cancel()
            self._hide_handle = None
        self._active = False
        self._visible = False

    def _cancel_show(self) -> None:
        if self._show_handle is not None:
            self._show_handle.cancel()
            self._show_handle = None

    def _show(self) -> None:
        self._show_handle = None
        if self._active:
            self._visible = True

    def _hide(self) -> None:
        self._hide_handle = None
        self._visible = False
