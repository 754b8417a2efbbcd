"""Connection-quality sampling from cumulative transport counters."""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class TransportCounters:
    """Cumulative counters read from a peer transport at one instant."""

    timestamp: float
    frames_decoded: int = 0
    frames_dropped: int = 0
    bytes_received: int = 0
    packets_received: int = 0
    packets_lost: int = 0


@dataclass(frozen=True, slots=True)
class MediaSample:
    fps: float = 0.0
    bitrate_kbps: float = 0.0
    dropped_frames: int = 0
    packet_loss_percent: float = 0.0


class MetricsSampler:
    """Turn successive counter readings into per-interval rates.

    The first reading only primes the baseline. A counter that goes backwards
    (transport recreated, stats reset) contributes zero for that interval.
    """

    def __init__(self) -> None:
        self._previous: TransportCounters | None = None

    def reset(self) -> None:
        self._previous = None

    def sample(self, counters: TransportCounters) -> MediaSample:
        previous, self._previous = self._previous, counters
        if previous is None:
            return MediaSample()

        elapsed = counters.timestamp - previous.timestamp
        if elapsed <= 0:
            return MediaSample()

        frames = _delta(counters.frames_decoded, previous.frames_decoded)
        dropped = _delta(counters.frames_dropped, previous.frames_dropped)
        received_bytes = _delta(counters.bytes_received, previous.bytes_received)
        packets = _delta(counters.packets_received, previous.packets_received)
        lost = _delta(counters.packets_lost, previous.packets_lost)

        expected = packets + lost
        loss = (lost / expected) * 100 if expected else 0.0
        return MediaSample(
            fps=frames / elapsed,
            bitrate_kbps=(received_bytes * 8) / 1000 / elapsed,
            dropped_frames=dropped,
            packet_loss_percent=loss,
        )


def _delta(current: int, previous: int) -> int:
    return max(0, current - previous)
