"""Constant-product bonding curve math.

Pure functions shared by quoting, execution and validation paths. All
reserve arithmetic is integer, in on-chain base units. The reserve a trade
leaves behind is rounded up, so rounding always favours the curve and a
round trip can never pay out more than it put in. Decimal is used only for ratios (price, impact, progress) and
for conversion to human units at the presentation boundary.

Curve:  k = virtual_sol * virtual_tokens
  buy:  fee is taken from the SOL input, the rest moves the curve
  sell: the curve pays gross SOL, fee is taken from that output
"""

from dataclasses import dataclass
from decimal import Decimal

from indexer.exceptions import CurveClosedError, InvariantViolation
from indexer.models import Asset

BPS_DENOMINATOR = 10_000


@dataclass(frozen=True)
class BuyQuote:
    """Result of quoting a buy against the curve."""

    sol_in: int
    tokens_out: int
    fee: int
    price_impact: Decimal  # fractional rise of the marginal price, e.g. 0.02 = 2%
    new_virtual_sol: int
    new_virtual_tokens: int


@dataclass(frozen=True)
class SellQuote:
    """Result of quoting a sell against the curve.

    ``tokens_in`` is the amount actually quoted. When the request had to be
    reduced to fit the curve's real SOL, ``capped_by_liquidity`` is True and
    ``requested_tokens_in`` keeps the original amount.
    """

    tokens_in: int
    sol_out: int
    fee: int
    price_impact: Decimal  # fractional drop of the marginal price
    new_virtual_sol: int
    new_virtual_tokens: int
    requested_tokens_in: int
    capped_by_liquidity: bool = False

    @property
    def gross_sol_out(self) -> int:
        return self.sol_out + self.fee


def _validate_reserves(virtual_sol: int, virtual_tokens: int) -> None:
    if virtual_sol <= 0 or virtual_tokens <= 0:
        raise InvariantViolation(
            f"Virtual reserves must be positive (sol={virtual_sol}, tokens={virtual_tokens})"
        )


def _ceil_div(numerator: int, denominator: int) -> int:
    return -(-numerator // denominator)


def _validate_fee_bps(fee_bps: int) -> None:
    if not 0 <= fee_bps < BPS_DENOMINATOR:
        raise ValueError(f"fee_bps must be in [0, {BPS_DENOMINATOR}), got {fee_bps}")


def marginal_price_change(
    virtual_sol: int,
    virtual_tokens: int,
    new_virtual_sol: int,
    new_virtual_tokens: int,
) -> Decimal:
    """Relative change of virtual_sol/virtual_tokens between two curve states.

    Computed as one exact integer ratio so no rounding creeps in before the
    final Decimal division. Positive when the price rises.
    """
    if new_virtual_sol <= 0 or new_virtual_tokens <= 0:
        raise InvariantViolation(
            f"Trade would empty the curve (sol={new_virtual_sol}, tokens={new_virtual_tokens})"
        )
    before_after = Decimal(new_virtual_sol * virtual_tokens)
    return before_after / Decimal(virtual_sol * new_virtual_tokens) - 1


def quote_buy(
    sol_in: int,
    virtual_sol: int,
    virtual_tokens: int,
    fee_bps: int,
) -> BuyQuote:
    """Tokens received for ``sol_in`` lamports.

    The fee is applied to the input first; only ``sol_in - fee`` moves the
    curve. ``new_virtual_tokens`` is rounded up, so the post-trade product is
    never below k and ``tokens_out`` is never overstated.
    """
    if sol_in <= 0:
        raise ValueError(f"sol_in must be positive, got {sol_in}")
    _validate_fee_bps(fee_bps)
    _validate_reserves(virtual_sol, virtual_tokens)

    fee = sol_in * fee_bps // BPS_DENOMINATOR
    sol_after_fee = sol_in - fee

    invariant = virtual_sol * virtual_tokens
    new_virtual_sol = virtual_sol + sol_after_fee
    new_virtual_tokens = _ceil_div(invariant, new_virtual_sol)
    tokens_out = virtual_tokens - new_virtual_tokens

    return BuyQuote(
        sol_in=sol_in,
        tokens_out=tokens_out,
        fee=fee,
        price_impact=marginal_price_change(
            virtual_sol, virtual_tokens, new_virtual_sol, new_virtual_tokens
        ),
        new_virtual_sol=new_virtual_sol,
        new_virtual_tokens=new_virtual_tokens,
    )


def quote_sell(
    tokens_in: int,
    virtual_sol: int,
    virtual_tokens: int,
    fee_bps: int,
) -> SellQuote:
    """Net SOL received for selling ``tokens_in`` base units.

    Does not look at real reserves; use quote_sell_capped when the curve
    may not custody enough SOL for the payout.
    """
    if tokens_in <= 0:
        raise ValueError(f"tokens_in must be positive, got {tokens_in}")
    _validate_fee_bps(fee_bps)
    _validate_reserves(virtual_sol, virtual_tokens)

    invariant = virtual_sol * virtual_tokens
    new_virtual_tokens = virtual_tokens + tokens_in
    new_virtual_sol = _ceil_div(invariant, new_virtual_tokens)
    gross = virtual_sol - new_virtual_sol

    fee = gross * fee_bps // BPS_DENOMINATOR

    return SellQuote(
        tokens_in=tokens_in,
        sol_out=gross - fee,
        fee=fee,
        price_impact=-marginal_price_change(
            virtual_sol, virtual_tokens, new_virtual_sol, new_virtual_tokens
        ),
        new_virtual_sol=new_virtual_sol,
        new_virtual_tokens=new_virtual_tokens,
        requested_tokens_in=tokens_in,
    )


def max_sellable_tokens(virtual_sol: int, virtual_tokens: int, real_sol: int) -> int | None:
    """Largest sell whose gross payout does not exceed ``real_sol``.

    From  virtual_sol - k / (virtual_tokens + t) <= real_sol
    it follows t <= k / (virtual_sol - real_sol) - virtual_tokens.
    Returns None when real_sol covers the whole virtual side (no limit).
    """
    _validate_reserves(virtual_sol, virtual_tokens)
    if real_sol < 0:
        raise InvariantViolation(f"Real SOL reserves cannot be negative ({real_sol})")
    headroom = virtual_sol - real_sol
    if headroom <= 0:
        return None
    return max(virtual_sol * virtual_tokens // headroom - virtual_tokens, 0)


def cap_sell_to_liquidity(
    tokens_in: int,
    virtual_sol: int,
    virtual_tokens: int,
    real_sol: int,
    buffer_bps: int = 200,
) -> int:
    """Reduce ``tokens_in`` so the payout stays within the curve's real SOL.

    The computed maximum is shrunk by ``buffer_bps`` to absorb rounding
    differences between this quote and on-chain execution. The buffer is a
    tunable, not a proven bound.
    """
    _validate_fee_bps(buffer_bps)
    limit = max_sellable_tokens(virtual_sol, virtual_tokens, real_sol)
    if limit is None:
        return tokens_in
    buffered = limit * (BPS_DENOMINATOR - buffer_bps) // BPS_DENOMINATOR
    return min(tokens_in, buffered)


def quote_sell_capped(
    tokens_in: int,
    asset: Asset,
    fee_bps: int,
    buffer_bps: int = 200,
) -> SellQuote:
    """Quote a sell, capping it first when the naive payout exceeds real SOL.

    The returned quote reports the executed amount and whether it was
    capped; callers surface both instead of silently truncating.
    """
    if asset.graduated:
        raise CurveClosedError(f"Curve for {asset.asset_id} has graduated")

    naive = quote_sell(
        tokens_in, asset.virtual_sol_reserves, asset.virtual_token_reserves, fee_bps
    )
    if naive.gross_sol_out <= asset.real_sol_reserves:
        return naive

    capped_tokens = cap_sell_to_liquidity(
        tokens_in,
        asset.virtual_sol_reserves,
        asset.virtual_token_reserves,
        asset.real_sol_reserves,
        buffer_bps,
    )
    if capped_tokens <= 0:
        return SellQuote(
            tokens_in=0,
            sol_out=0,
            fee=0,
            price_impact=Decimal("0"),
            new_virtual_sol=asset.virtual_sol_reserves,
            new_virtual_tokens=asset.virtual_token_reserves,
            requested_tokens_in=tokens_in,
            capped_by_liquidity=True,
        )

    quote = quote_sell(
        capped_tokens, asset.virtual_sol_reserves, asset.virtual_token_reserves, fee_bps
    )
    return SellQuote(
        tokens_in=quote.tokens_in,
        sol_out=quote.sol_out,
        fee=quote.fee,
        price_impact=quote.price_impact,
        new_virtual_sol=quote.new_virtual_sol,
        new_virtual_tokens=quote.new_virtual_tokens,
        requested_tokens_in=tokens_in,
        capped_by_liquidity=True,
    )


def split_fee(amount: int, total_fee_bps: int, protocol_fee_bps: int) -> tuple[int, int]:
    """Split the fee on ``amount`` into (protocol, creator) like the program does.

    Both parts are floored from the same base; the creator gets
    total - protocol so the two always add up to the charged fee.
    """
    if protocol_fee_bps > total_fee_bps:
        raise ValueError("protocol_fee_bps cannot exceed total_fee_bps")
    total = amount * total_fee_bps // BPS_DENOMINATOR
    protocol = amount * protocol_fee_bps // BPS_DENOMINATOR
    return protocol, total - protocol


def is_graduated(real_sol: int, threshold: int) -> bool:
    """True once the curve's real SOL reaches the graduation threshold."""
    return real_sol >= threshold


def graduation_progress(real_sol: int, threshold: int) -> Decimal:
    """Percent of the way to graduation, capped at 100."""
    if threshold <= 0:
        raise ValueError("threshold must be positive")
    return min(Decimal(real_sol) * 100 / Decimal(threshold), Decimal("100"))


def spot_price(
    virtual_sol: int,
    virtual_tokens: int,
    sol_decimals: int = 9,
    token_decimals: int = 6,
) -> Decimal:
    """Marginal price in SOL per whole token."""
    _validate_reserves(virtual_sol, virtual_tokens)
    sol = Decimal(virtual_sol).scaleb(-sol_decimals)
    tokens = Decimal(virtual_tokens).scaleb(-token_decimals)
    return sol / tokens


def market_cap_sol(
    virtual_sol: int,
    virtual_tokens: int,
    total_supply: int,
    sol_decimals: int = 9,
    token_decimals: int = 6,
) -> Decimal:
    """Fully diluted market cap in SOL at the current marginal price."""
    price = spot_price(virtual_sol, virtual_tokens, sol_decimals, token_decimals)
    return price * Decimal(total_supply).scaleb(-token_decimals)


def lamports_to_sol(lamports: int, sol_decimals: int = 9) -> Decimal:
    return Decimal(lamports).scaleb(-sol_decimals)


def units_to_tokens(units: int, token_decimals: int = 6) -> Decimal:
    return Decimal(units).scaleb(-token_decimals)


def apply_buy(
    asset: Asset,
    sol_in: int,
    total_fee_bps: int,
    graduation_threshold: int,
) -> tuple[Asset, BuyQuote]:
    """Curve state after a buy settles, plus the quote that produced it.

    Real SOL grows by the post-fee input; real tokens shrink by the output.
    """
    if asset.graduated:
        raise CurveClosedError(f"Curve for {asset.asset_id} has graduated")

    quote = quote_buy(
        sol_in, asset.virtual_sol_reserves, asset.virtual_token_reserves, total_fee_bps
    )
    if quote.tokens_out > asset.real_token_reserves:
        raise InvariantViolation(
            f"Buy would take {quote.tokens_out} tokens but curve holds "
            f"{asset.real_token_reserves}"
        )

    real_sol = asset.real_sol_reserves + (sol_in - quote.fee)
    new_state = Asset(
        asset_id=asset.asset_id,
        virtual_sol_reserves=quote.new_virtual_sol,
        virtual_token_reserves=quote.new_virtual_tokens,
        real_sol_reserves=real_sol,
        real_token_reserves=asset.real_token_reserves - quote.tokens_out,
        graduated=asset.graduated or is_graduated(real_sol, graduation_threshold),
        updated_at=asset.updated_at,
    )
    check_reserve_invariants(new_state)
    return new_state, quote


def apply_sell(
    asset: Asset,
    tokens_in: int,
    total_fee_bps: int,
    buffer_bps: int = 200,
) -> tuple[Asset, SellQuote]:
    """Curve state after a (possibly liquidity-capped) sell settles."""
    quote = quote_sell_capped(tokens_in, asset, total_fee_bps, buffer_bps)
    if quote.tokens_in == 0:
        return asset, quote

    new_state = Asset(
        asset_id=asset.asset_id,
        virtual_sol_reserves=quote.new_virtual_sol,
        virtual_token_reserves=quote.new_virtual_tokens,
        real_sol_reserves=asset.real_sol_reserves - quote.gross_sol_out,
        real_token_reserves=asset.real_token_reserves + quote.tokens_in,
        graduated=asset.graduated,
        updated_at=asset.updated_at,
    )
    check_reserve_invariants(new_state)
    return new_state, quote


def check_reserve_invariants(asset: Asset) -> None:
    """Raise InvariantViolation for negative reserves or real SOL above virtual SOL."""
    if asset.virtual_sol_reserves <= 0 or asset.virtual_token_reserves <= 0:
        raise InvariantViolation(f"Non-positive virtual reserves for {asset.asset_id}")
    if asset.real_sol_reserves < 0 or asset.real_token_reserves < 0:
        raise InvariantViolation(f"Negative real reserves for {asset.asset_id}")
    if asset.real_sol_reserves > asset.virtual_sol_reserves:
        raise InvariantViolation(
            f"Real SOL ({asset.real_sol_reserves}) exceeds virtual SOL "
            f"({asset.virtual_sol_reserves}) for {asset.asset_id}"
        )
