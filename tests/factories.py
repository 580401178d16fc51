"""Builders and constants shared by the test modules."""

from decimal import Decimal

from indexer.codec.events import TradeEvent
from indexer.models import Trade, TradeSide

PROGRAM_ID = "GUyF2TVe32Cid4iGVt2F6wPYDhLSVmTUZBj2974outYM"
MINT_A = "So11111111111111111111111111111111111111112"
MINT_B = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TRADER = "11111111111111111111111111111111"

# 2023-11-14 22:00:00 UTC: start of a 1m/5m/15m/1h bucket, 2h before the 1d boundary
BASE_TS = 1_699_999_200


def make_trade(
    signature: str,
    price: str,
    volume: str,
    created_at: int = BASE_TS,
    asset_id: str = MINT_A,
    side: TradeSide = TradeSide.BUY,
    sol_price_usd: str | None = None,
) -> Trade:
    """Build a Trade whose token amount is consistent with price and volume."""
    sol_amount = Decimal(volume)
    price_sol = Decimal(price)
    return Trade(
        signature=signature,
        asset_id=asset_id,
        trader=TRADER,
        side=side,
        sol_amount=sol_amount,
        token_amount=sol_amount / price_sol,
        price_sol=price_sol,
        protocol_fee=sol_amount * Decimal("0.005"),
        creator_fee=sol_amount * Decimal("0.005"),
        created_at=created_at,
        sol_price_usd=None if sol_price_usd is None else Decimal(sol_price_usd),
    )


def make_event(
    asset_id: str = MINT_A,
    is_buy: bool = True,
    sol_amount: int = 1_000_000_000,
    token_amount: int = 32_000_000_000,
    timestamp: int = BASE_TS,
) -> TradeEvent:
    """A plausible trade event in raw units (1 SOL for 32,000 tokens)."""
    return TradeEvent(
        asset_id=asset_id,
        trader=TRADER,
        is_buy=is_buy,
        sol_amount=sol_amount,
        token_amount=token_amount,
        protocol_fee=sol_amount * 50 // 10_000,
        creator_fee=sol_amount * 50 // 10_000,
        virtual_sol_reserves=31_000_000_000,
        virtual_token_reserves=968_000_000_000_000,
        timestamp=timestamp,
    )
