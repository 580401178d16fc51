"""TradeEvent decoding from program log lines.

The program emits one ``Program data: <base64>`` log line per event. A
trade event payload is laid out as (little-endian):

    offset  size  field
         0     8  discriminator (bd db 7f d3 4e e6 61 ee)
         8    32  mint
        40    32  trader
        72     1  is_buy (1 = buy)
        73     8  sol_amount            u64 lamports
        81     8  token_amount          u64 base units
        89     8  protocol_fee          u64 lamports
        97     8  creator_fee           u64 lamports
       105     8  virtual_sol_reserves  u64
       113     8  virtual_token_reserves u64
       121     8  timestamp             i64 unix seconds
       129        (end)

This layout is bit-exact with the emitter and must not change on one side
only. Decoding never raises to callers: most transactions carry no trade
event, and a malformed one cannot be fixed after the fact, so both cases
come back as None.
"""

import base64
import binascii
from collections.abc import Iterable
from dataclasses import dataclass

from indexer.codec.cursor import PUBKEY_SIZE, ByteCursor, pack_i64, pack_pubkey, pack_u64
from indexer.exceptions import EventDecodeError
from indexer.logging import get_logger

logger = get_logger(__name__)

PROGRAM_DATA_PREFIX = "Program data: "

# Anchor event discriminator: sha256("event:TradeEvent")[:8]
TRADE_EVENT_DISCRIMINATOR = bytes([189, 219, 127, 211, 78, 230, 97, 238])
DISCRIMINATOR_SIZE = len(TRADE_EVENT_DISCRIMINATOR)

TRADE_EVENT_SIZE = DISCRIMINATOR_SIZE + 2 * PUBKEY_SIZE + 1 + 7 * 8


@dataclass(frozen=True)
class TradeEvent:
    """A decoded swap event, in raw on-chain units."""

    asset_id: str
    trader: str
    is_buy: bool
    sol_amount: int
    token_amount: int
    protocol_fee: int
    creator_fee: int
    virtual_sol_reserves: int
    virtual_token_reserves: int
    timestamp: int


def decode_trade_event(payload: bytes) -> TradeEvent | None:
    """Decode one event payload, or return None if it is not a trade event.

    The discriminator is compared as an exact 8-byte sequence. A payload
    with the right discriminator but a short or broken tail is logged and
    treated as no event.
    """
    if len(payload) < DISCRIMINATOR_SIZE:
        return None
    if payload[:DISCRIMINATOR_SIZE] != TRADE_EVENT_DISCRIMINATOR:
        return None

    try:
        return _read_trade_event(payload)
    except EventDecodeError as e:
        logger.warning(
            "malformed_trade_event",
            payload_size=len(payload),
            expected_size=TRADE_EVENT_SIZE,
            error=str(e),
        )
        return None


def _read_trade_event(payload: bytes) -> TradeEvent:
    cursor = ByteCursor(payload, offset=DISCRIMINATOR_SIZE)
    cursor.require(TRADE_EVENT_SIZE)
    try:
        return TradeEvent(
            asset_id=cursor.read_pubkey(),
            trader=cursor.read_pubkey(),
            is_buy=cursor.read_bool(),
            sol_amount=cursor.read_u64(),
            token_amount=cursor.read_u64(),
            protocol_fee=cursor.read_u64(),
            creator_fee=cursor.read_u64(),
            virtual_sol_reserves=cursor.read_u64(),
            virtual_token_reserves=cursor.read_u64(),
            timestamp=cursor.read_i64(),
        )
    except ValueError as e:
        # solders rejects addresses it cannot build
        raise EventDecodeError(f"Unparsable field at offset {cursor.offset}: {e}") from e


def find_trade_event(log_lines: Iterable[str]) -> TradeEvent | None:
    """Return the first trade event found in a transaction's log lines."""
    for line in log_lines:
        if not line.startswith(PROGRAM_DATA_PREFIX):
            continue
        encoded = line[len(PROGRAM_DATA_PREFIX) :].strip()
        try:
            payload = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            logger.warning("invalid_program_data_base64", line_prefix=encoded[:16])
            continue

        event = decode_trade_event(payload)
        if event is not None:
            return event
    return None


def encode_trade_event(event: TradeEvent) -> bytes:
    """Serialize an event exactly as the program emits it."""
    return b"".join(
        [
            TRADE_EVENT_DISCRIMINATOR,
            pack_pubkey(event.asset_id),
            pack_pubkey(event.trader),
            b"\x01" if event.is_buy else b"\x00",
            pack_u64(event.sol_amount),
            pack_u64(event.token_amount),
            pack_u64(event.protocol_fee),
            pack_u64(event.creator_fee),
            pack_u64(event.virtual_sol_reserves),
            pack_u64(event.virtual_token_reserves),
            pack_i64(event.timestamp),
        ]
    )


def to_log_line(event: TradeEvent) -> str:
    """Render an event as the ``Program data:`` log line carrying it."""
    return PROGRAM_DATA_PREFIX + base64.b64encode(encode_trade_event(event)).decode("ascii")
