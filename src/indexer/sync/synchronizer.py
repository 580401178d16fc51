"""Trade synchronizer -- reconciles on-chain trade history into the trade log.

One run lists the program's most recent transaction signatures and, for
each one not yet in the store, fetches the transaction, decodes its
TradeEvent and appends a Trade. The signature is the natural key and the
trades table is INSERT OR IGNORE, so:

- re-running over the same window inserts nothing new
- two runs racing on the same signature produce one row
- a run cancelled halfway keeps whatever it already persisted

No global lock is taken and nothing is retried here; the next scheduled
run picks up what this one missed.
"""

from __future__ import annotations

from decimal import Decimal

from indexer.codec.events import TradeEvent, find_trade_event
from indexer.config import CurveSettings
from indexer.data.store import IndexerStore
from indexer.exceptions import InvariantViolation, SourceUnavailableError
from indexer.ledger.client import LedgerSource, LedgerTransaction
from indexer.logging import get_logger
from indexer.models import SyncResult, Trade, TradeSide
from indexer.pricing.feed import ReferencePriceFeed

logger = get_logger(__name__)


class TradeSynchronizer:
    """Pulls trade events for one program into the local trade log.

    Args:
        ledger: Read-only ledger source.
        store: Trade/asset persistence.
        program_id: The bonding curve program. Signatures are listed for the
            program address itself so every trade is seen.
        curve_settings: Decimals used to convert raw units.
        price_feed: Optional SOL/USD feed; when present each synced trade
            carries a reference price snapshot.
    """

    def __init__(
        self,
        ledger: LedgerSource,
        store: IndexerStore,
        program_id: str,
        curve_settings: CurveSettings,
        price_feed: ReferencePriceFeed | None = None,
    ) -> None:
        self._ledger = ledger
        self._store = store
        self._program_id = program_id
        self._curve = curve_settings
        self._price_feed = price_feed

    async def sync(self, limit: int = 100, asset_filter: str | None = None) -> SyncResult:
        """Run one reconciliation pass over the latest ``limit`` signatures.

        Args:
            limit: How many recent signatures to examine.
            asset_filter: Only persist trades for this mint.

        Returns:
            SyncResult. A ledger listing failure is reported with
            ``success=False``; per-transaction failures only bump ``errors``.
        """
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")

        try:
            signatures = await self._ledger.list_recent_transaction_ids(self._program_id, limit)
        except SourceUnavailableError as e:
            logger.error("sync_listing_failed", program_id=self._program_id, error=str(e))
            return SyncResult(success=False, error=str(e))

        result = SyncResult(success=True, checked=len(signatures))
        price_snapshot: Decimal | None = None
        price_checked = False

        for signature in signatures:
            try:
                if await self._store.trade_exists(signature):
                    result.skipped += 1
                    continue

                tx = await self._ledger.fetch_transaction(signature)
                if tx is None or not tx.log_lines:
                    continue

                event = find_trade_event(tx.log_lines)
                if event is None:
                    continue
                if asset_filter is not None and event.asset_id != asset_filter:
                    continue

                if not price_checked and self._price_feed is not None:
                    price_snapshot = await self._price_feed.current_reference_price_usd()
                    price_checked = True

                trade = self.build_trade(tx, event, price_snapshot)
                await self._store.register_asset(
                    event.asset_id,
                    event.virtual_sol_reserves,
                    event.virtual_token_reserves,
                )

                if await self._store.insert_trade(trade):
                    result.synced += 1
                    result.synced_signatures.append(signature)
                    result.synced_trades.append(trade)
                    logger.debug(
                        "trade_synced",
                        signature=signature,
                        asset_id=trade.asset_id,
                        side=trade.side.value,
                        sol_amount=str(trade.sol_amount),
                    )
                else:
                    # A concurrent run persisted it first
                    result.skipped += 1
            except Exception:
                result.errors += 1
                logger.warning("trade_sync_failed", signature=signature, exc_info=True)

        logger.info(
            "sync_complete",
            checked=result.checked,
            synced=result.synced,
            skipped=result.skipped,
            errors=result.errors,
            asset_filter=asset_filter,
        )
        return result

    def build_trade(
        self,
        tx: LedgerTransaction,
        event: TradeEvent,
        sol_price_usd: Decimal | None = None,
    ) -> Trade:
        """Convert a decoded event into a Trade in human units.

        ``created_at`` is the event's own timestamp, falling back to the
        block time. Ingestion time is never used.
        """
        if event.token_amount <= 0:
            raise InvariantViolation(f"Trade {tx.signature} has no token amount")

        created_at = event.timestamp if event.timestamp > 0 else tx.confirmed_at
        if created_at is None:
            raise InvariantViolation(f"Trade {tx.signature} has no ledger timestamp")

        sol_amount = Decimal(event.sol_amount) / self._curve.sol_scale
        token_amount = Decimal(event.token_amount) / self._curve.token_scale

        return Trade(
            signature=tx.signature,
            asset_id=event.asset_id,
            trader=event.trader,
            side=TradeSide.BUY if event.is_buy else TradeSide.SELL,
            sol_amount=sol_amount,
            token_amount=token_amount,
            price_sol=sol_amount / token_amount,
            protocol_fee=Decimal(event.protocol_fee) / self._curve.sol_scale,
            creator_fee=Decimal(event.creator_fee) / self._curve.sol_scale,
            created_at=created_at,
            sol_price_usd=sol_price_usd,
        )

