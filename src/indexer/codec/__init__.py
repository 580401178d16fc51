"""Binary codecs for program log events and bonding curve accounts."""

from indexer.codec.accounts import BondingCurveAccount, bonding_curve_address, decode_bonding_curve
from indexer.codec.cursor import ByteCursor
from indexer.codec.events import (
    PROGRAM_DATA_PREFIX,
    TRADE_EVENT_DISCRIMINATOR,
    TRADE_EVENT_SIZE,
    TradeEvent,
    decode_trade_event,
    encode_trade_event,
    find_trade_event,
    to_log_line,
)

__all__ = [
    "PROGRAM_DATA_PREFIX",
    "TRADE_EVENT_DISCRIMINATOR",
    "TRADE_EVENT_SIZE",
    "BondingCurveAccount",
    "ByteCursor",
    "TradeEvent",
    "bonding_curve_address",
    "decode_bonding_curve",
    "decode_trade_event",
    "encode_trade_event",
    "find_trade_event",
    "to_log_line",
]
