"""Abstract byte sink and the helper that finalizes one."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

_log = logging.getLogger(__name__)

BytesLike = bytes | bytearray | memoryview


class Sink(ABC):
    """A destination that accepts bytes written at given offsets."""

    @abstractmethod
    def write(self, offset: int, data: BytesLike) -> None:
        """Write ``data`` at byte ``offset``; raise on failure."""

    @abstractmethod
    def _flush(self) -> None:
        """Push any buffered data to the destination; raise on failure."""

    def close(self) -> None:
        """Release resources held by the sink."""


def finalize_sink(sink: Sink | None) -> None:
    """Flush ``sink`` and close it.

    A ``None`` sink is accepted and ignored. If flushing fails the error
    propagates and the sink is left open.
    """
    if sink is None:
        _log.info("Sink is null. Nothing to finalize.")
        return

    sink._flush()
    sink.close()