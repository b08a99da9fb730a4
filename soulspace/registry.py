from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass

from .graph import FADE_FLOOR, Unit
from .logging_utils import debug_enabled
from .scheduler import Scheduler, TimerHandle
from .schema import LayerKind, TimerTag

_LOGGER = logging.getLogger("soulspace.registry")


@dataclass(frozen=True, slots=True)
class _PendingTimer:
    handle: TimerHandle
    tag: TimerTag | None


class TimerRegistry:
    """Cancelable deferred callbacks, optionally tagged.

    A timer drops out of the registry the moment it fires, so ``count`` only
    ever reports callbacks that are still waiting.
    """

    def __init__(self, scheduler: Scheduler) -> None:
        self._scheduler = scheduler
        self._pending: dict[int, _PendingTimer] = {}
        self._ids = itertools.count()

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    def schedule(
        self,
        delay: float,
        callback: Callable[[], None],
        *,
        tag: TimerTag | None = None,
    ) -> int:
        timer_id = next(self._ids)

        def _fire() -> None:
            if self._pending.pop(timer_id, None) is None:
                return
            callback()

        handle = self._scheduler.call_later(max(0.0, delay), _fire)
        self._pending[timer_id] = _PendingTimer(handle=handle, tag=tag)
        return timer_id

    def cancel(self, timer_id: int) -> bool:
        pending = self._pending.pop(timer_id, None)
        if pending is None:
            return False
        pending.handle.cancel()
        return True

    def cancel_tagged(self, tag: TimerTag) -> int:
        doomed = [timer_id for timer_id, pending in self._pending.items() if pending.tag == tag]
        for timer_id in doomed:
            self.cancel(timer_id)
        return len(doomed)

    def cancel_all(self) -> int:
        doomed = list(self._pending)
        for timer_id in doomed:
            self.cancel(timer_id)
        return len(doomed)

    def count(self, tag: TimerTag | None = None) -> int:
        if tag is None:
            return len(self._pending)
        return sum(1 for pending in self._pending.values() if pending.tag == tag)

    def __len__(self) -> int:
        return len(self._pending)


class ActiveUnitRegistry:
    """Live synthesis units, looked up and swept by layer kind."""

    def __init__(self) -> None:
        self._units: list[Unit] = []

    def add(self, unit: Unit) -> Unit:
        self._units.append(unit)
        return unit

    def remove(self, unit: Unit) -> bool:
        try:
            self._units.remove(unit)
        except ValueError:
            return False
        return True

    def units(self, layer: LayerKind | None = None) -> tuple[Unit, ...]:
        if layer is None:
            return tuple(self._units)
        return tuple(unit for unit in self._units if unit.layer == layer)

    def count(self, layer: LayerKind | None = None) -> int:
        return len(self.units(layer))

    def sweep(
        self,
        layer: LayerKind | None,
        *,
        fade: float,
        stop_after: float,
    ) -> int:
        """Fade matching units to silence, stop them and forget them."""
        doomed = self.units(layer)
        for unit in doomed:
            try:
                unit.fade_out(fade, stop_after=stop_after, floor=FADE_FLOOR)
            except Exception as exc:
                _LOGGER.warning(
                    "Fading %s unit failed: %s", unit.layer, exc, exc_info=debug_enabled()
                )
        doomed_ids = {id(unit) for unit in doomed}
        self._units = [unit for unit in self._units if id(unit) not in doomed_ids]
        return len(doomed)

    def clear(self) -> None:
        self._units.clear()

    def __len__(self) -> int:
        return len(self._units)
