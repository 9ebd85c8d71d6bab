"""
Readiness tracking for the supervised gateway process.

The gateway prints a line containing one of a few well-known words once it
has bound its port. That line is the only signal we get, so the gate is a
plain substring match over stdout. It is known to be loose: an unrelated log
line mentioning "started" flips it as well.
"""

import enum
import logging
from typing import Iterable, Optional

from health_wrapper.vars import GATEWAY_READY_MARKERS

logger = logging.getLogger("uvicorn.error")


class ReadinessState(enum.Enum):
    NOT_READY = "not_ready"
    READY = "ready"


class ReadinessGate:
    """
    Single-writer readiness flag.

    Only the stdout pump of the gateway process writes to it and it only ever
    moves from NOT_READY to READY. Everything runs on one event loop, so reads
    never need a lock; callers must still check it right where they act on it.
    """

    def __init__(self, markers: Optional[Iterable[str]] = None):
        self.markers = tuple(markers if markers is not None else GATEWAY_READY_MARKERS)
        self._state = ReadinessState.NOT_READY

    @property
    def state(self) -> ReadinessState:
        return self._state

    def is_ready(self) -> bool:
        return self._state is ReadinessState.READY

    def observe(self, line: str) -> bool:
        """Inspect one line of gateway output. Returns True only on the transition."""
        if self._state is ReadinessState.READY:
            return False
        if not any(marker in line for marker in self.markers):
            return False
        self._state = ReadinessState.READY
        logger.info("[proxy] Gateway detected as ready")
        return True
