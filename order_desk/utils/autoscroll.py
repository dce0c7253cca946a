"""
Edge autoscroll while a group is being dragged.

scroll_velocity() maps a pointer position inside a scrollable viewport to a
vertical velocity (pixels per frame); AutoScroller applies the latest velocity
once per frame until stopped. Neither knows anything about group ordering.
"""
import asyncio
from typing import Callable, Optional

from order_desk.utils.helpers import round_half_up

DEFAULT_EDGE = 160.0
DEFAULT_MAX_SPEED = 36.0
DEFAULT_MIN_SPEED = 3.0
DEFAULT_POWER = 1.3
FRAME_SECONDS = 1 / 60


def scroll_velocity(
    pointer_y: float,
    view_top: float,
    view_height: float,
    edge: float = DEFAULT_EDGE,
    max_speed: float = DEFAULT_MAX_SPEED,
    min_speed: float = DEFAULT_MIN_SPEED,
    power: float = DEFAULT_POWER,
) -> int:
    """
    Velocity for the current pointer position.

    Negative scrolls up, positive scrolls down, 0 outside both edge zones.
    Speed grows with depth into the zone following t ** power and never drops
    below min_speed once inside it.
    """
    if edge <= 0:
        return 0
    top_zone = view_top + edge
    bottom_zone = view_top + view_height - edge

    if pointer_y < top_zone:
        t = min(1.0, (top_zone - pointer_y) / edge)
        return -round_half_up(max(min_speed, max_speed * (t ** power)))
    if pointer_y > bottom_zone:
        t = min(1.0, (pointer_y - bottom_zone) / edge)
        return round_half_up(max(min_speed, max_speed * (t ** power)))
    return 0


class AutoScroller:
    """Frame loop that scrolls by the most recent velocity."""

    def __init__(
        self,
        scroll_by: Callable[[int], None],
        edge: float = DEFAULT_EDGE,
        max_speed: float = DEFAULT_MAX_SPEED,
        min_speed: float = DEFAULT_MIN_SPEED,
        power: float = DEFAULT_POWER,
        frame_seconds: float = FRAME_SECONDS,
    ):
        self.scroll_by = scroll_by
        self.edge = edge
        self.max_speed = max_speed
        self.min_speed = min_speed
        self.power = power
        self.frame_seconds = frame_seconds
        self.velocity = 0
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def update(self, pointer_y: float, view_top: float, view_height: float) -> int:
        self.velocity = scroll_velocity(
            pointer_y, view_top, view_height,
            edge=self.edge, max_speed=self.max_speed,
            min_speed=self.min_speed, power=self.power,
        )
        return self.velocity

    def tick(self) -> int:
        """Apply one frame of scrolling."""
        if self.velocity:
            self.scroll_by(self.velocity)
        return self.velocity

    def start(self) -> None:
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(self._loop())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
        self._task = None
        self.velocity = 0

    async def _loop(self) -> None:
        while True:
            self.tick()
            await asyncio.sleep(self.frame_seconds)
