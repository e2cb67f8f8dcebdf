"""Per-connection outgoing bitrate control.

The server decides how much bandwidth a streamer may use; this controller
gets the encoder there without visible jumps and backs off on its own when
the link drops packets. Decreases react faster than increases, and an
increase never goes above the server-assigned target.

Ramp-up at start and transitions after a server command run as one
cancellable :class:`asyncio.Task`. A newer command cancels the running
sequence instead of queueing behind it, and :meth:`BitrateController.close`
cancels everything so nothing touches a closed connection.
"""

import asyncio
import enum
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from ..errors import StaleTarget

logger = logging.getLogger(__name__)

LOSS_THRESHOLD = 5.0  # percent
CONGESTION_WINDOW = 3.0  # seconds of sustained loss before a step-down
RECOVERY_INTERVAL = 5.0  # seconds between step-ups
DECREASE_FACTOR = 0.85
INCREASE_FACTOR = 1.20
FLOOR_RATIO = 0.5
RAMP_STEPS = (0.5, 0.8, 1.0)
RAMP_INTERVAL = 0.5
TRANSITION_STEPS = 10
TRANSITION_INTERVAL = 0.2
POLL_INTERVAL = 2.0

Applier = Callable[[int], Union[None, Awaitable[None]]]


class Phase(enum.Enum):
    IDLE = "idle"
    RAMPING = "ramping"
    STEADY = "steady"
    CONGESTED = "congested"
    RECOVERING = "recovering"


@dataclass
class ClientBitrateState:
    current_cap: float = 0
    target_bitrate: float = 0
    min_bitrate: float = 0
    high_loss_started_at: Optional[float] = None
    last_increase_at: float = 0.0


class BitrateController:
    def __init__(self, apply: Applier, target_bitrate: float = 0,
                 clock=time.monotonic, sleep=asyncio.sleep):
        self._apply = apply
        self._clock = clock
        self._sleep = sleep
        self.state = ClientBitrateState(
            target_bitrate=target_bitrate,
            min_bitrate=target_bitrate * FLOOR_RATIO,
            last_increase_at=clock(),
        )
        self.phase = Phase.IDLE
        self._sequence: Optional[asyncio.Task] = None
        self._poller: Optional[asyncio.Task] = None

    @property
    def busy(self) -> bool:
        """True while a ramp or transition sequence is applying steps."""
        return self._sequence is not None and not self._sequence.done()

    async def _set_cap(self, bitrate: float) -> None:
        self.state.current_cap = bitrate
        result = self._apply(int(round(bitrate)))
        if inspect.isawaitable(result):
            await result

    def _replace_sequence(self, coro) -> asyncio.Task:
        self._cancel_sequence()
        self._sequence = asyncio.ensure_future(coro)
        return self._sequence

    def _cancel_sequence(self) -> None:
        if self._sequence is not None and not self._sequence.done():
            self._sequence.cancel()
        self._sequence = None

    # -- initial ramp -----------------------------------------------------

    def start(self, target_bitrate: Optional[float] = None) -> asyncio.Task:
        """Begin sending: apply 50%, 80% then 100% of the target, 500 ms apart.

        Raises:
            StaleTarget: no usable target is known yet.
        """
        if target_bitrate is not None:
            self.state.target_bitrate = target_bitrate
            self.state.min_bitrate = target_bitrate * FLOOR_RATIO
        if not self.state.target_bitrate or self.state.target_bitrate <= 0:
            raise StaleTarget()
        self.phase = Phase.RAMPING
        return self._replace_sequence(self._ramp(self.state.target_bitrate))

    async def _ramp(self, target: float) -> None:
        logger.info("Ramping up to %.2f Mbps", target / 1e6)
        for i, ratio in enumerate(RAMP_STEPS):
            if i:
                await self._sleep(RAMP_INTERVAL)
            await self._set_cap(target * ratio)
            logger.debug("Ramp step %d/%d: %.2f Mbps", i + 1, len(RAMP_STEPS),
                         self.state.current_cap / 1e6)
        self.state.last_increase_at = self._clock()
        self.phase = Phase.STEADY

    # -- server commands --------------------------------------------------

    def set_target(self, new_target: float) -> Optional[asyncio.Task]:
        """Apply a reallocation from the server, gradually.

        A zero or missing target holds the current cap and suspends recovery
        until a usable target arrives.
        """
        self._cancel_sequence()
        if not new_target or new_target <= 0:
            logger.warning("Ignoring stale target %r, holding %.2f Mbps",
                           new_target, self.state.current_cap / 1e6)
            self.state.target_bitrate = 0
            return None

        self.state.target_bitrate = new_target
        self.state.min_bitrate = new_target * FLOOR_RATIO
        self.state.last_increase_at = self._clock()
        if self.phase is Phase.IDLE:
            # nothing is being sent yet; the ramp will use the new target
            return None
        return self._replace_sequence(self._transition(new_target))

    async def _transition(self, target: float) -> None:
        start = self.state.current_cap or target
        step = (target - start) / TRANSITION_STEPS
        logger.info("Adjusting bitrate %.2f -> %.2f Mbps", start / 1e6, target / 1e6)
        for i in range(1, TRANSITION_STEPS + 1):
            await self._set_cap(target if i == TRANSITION_STEPS else start + step * i)
            if i < TRANSITION_STEPS:
                await self._sleep(TRANSITION_INTERVAL)
        self.state.last_increase_at = self._clock()
        self.phase = Phase.STEADY

    # -- control loop -----------------------------------------------------

    async def on_stats(self, packet_loss: float, now: Optional[float] = None) -> Optional[str]:
        """One control-loop tick. Returns "decrease", "increase" or None."""
        now = self._clock() if now is None else now
        state = self.state
        if self.phase is Phase.IDLE or self.busy or state.target_bitrate <= 0:
            return None

        if packet_loss > LOSS_THRESHOLD:
            if state.high_loss_started_at is None:
                state.high_loss_started_at = now
                return None
            if now - state.high_loss_started_at < CONGESTION_WINDOW:
                return None
            new_cap = max(state.current_cap * DECREASE_FACTOR, state.min_bitrate)
            if new_cap >= state.current_cap:
                return None
            logger.warning("Network congestion (%.1f%% loss), reducing to %.2f Mbps",
                           packet_loss, new_cap / 1e6)
            state.high_loss_started_at = now
            state.last_increase_at = now
            self.phase = Phase.CONGESTED
            await self._set_cap(new_cap)
            return "decrease"

        state.high_loss_started_at = None
        if state.current_cap >= state.target_bitrate:
            self.phase = Phase.STEADY
            return None
        if now - state.last_increase_at < RECOVERY_INTERVAL:
            return None
        new_cap = min(state.current_cap * INCREASE_FACTOR, state.target_bitrate)
        logger.info("Network stable, increasing to %.2f Mbps (target %.2f Mbps)",
                    new_cap / 1e6, state.target_bitrate / 1e6)
        state.last_increase_at = now
        self.phase = Phase.STEADY if new_cap >= state.target_bitrate else Phase.RECOVERING
        await self._set_cap(new_cap)
        return "increase"

    def start_polling(self, poll: Callable[[], Awaitable[float]],
                      interval: float = POLL_INTERVAL) -> asyncio.Task:
        """Run ``poll`` every ``interval`` seconds and feed its packet loss in."""
        if self._poller is not None and not self._poller.done():
            self._poller.cancel()
        self._poller = asyncio.ensure_future(self._poll_loop(poll, interval))
        return self._poller

    async def _poll_loop(self, poll, interval):
        while True:
            await self._sleep(interval)
            try:
                loss = await poll()
            except Exception:
                logger.exception("Stats poll failed")
                continue
            if loss is not None:
                await self.on_stats(loss)

    async def wait(self) -> None:
        """Wait for the running ramp or transition, if any."""
        task = self._sequence
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            if not task.cancelled():
                raise

    def close(self) -> None:
        self._cancel_sequence()
        if self._poller is not None and not self._poller.done():
            self._poller.cancel()
        self._poller = None
        self.phase = Phase.IDLE
