"""Constant-product bonding curve math."""

from indexer.curve.math import (
    BuyQuote,
    SellQuote,
    apply_buy,
    apply_sell,
    cap_sell_to_liquidity,
    quote_buy,
    quote_sell,
    quote_sell_capped,
    spot_price,
    split_fee,
)

__all__ = [
    "BuyQuote",
    "SellQuote",
    "apply_buy",
    "apply_sell",
    "cap_sell_to_liquidity",
    "quote_buy",
    "quote_sell",
    "quote_sell_capped",
    "spot_price",
    "split_fee",
]
