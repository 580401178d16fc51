"""Candle resolutions and UTC bucket alignment."""

from enum import Enum


class CandleInterval(str, Enum):
    """Supported candle resolutions."""

    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    H1 = "1h"
    D1 = "1d"

    @property
    def seconds(self) -> int:
        return _INTERVAL_SECONDS[self]


_INTERVAL_SECONDS: dict[CandleInterval, int] = {
    CandleInterval.M1: 60,
    CandleInterval.M5: 5 * 60,
    CandleInterval.M15: 15 * 60,
    CandleInterval.H1: 60 * 60,
    CandleInterval.D1: 24 * 60 * 60,
}

ALL_INTERVALS: tuple[CandleInterval, ...] = tuple(CandleInterval)


def bucket_time(timestamp: int, interval: CandleInterval) -> int:
    """Start of the bucket containing ``timestamp`` (Unix seconds, UTC, no offset).

    Floor division keeps pre-epoch timestamps in the bucket below them.
    """
    period = interval.seconds
    return (timestamp // period) * period
