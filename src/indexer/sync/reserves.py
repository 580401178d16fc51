"""Refreshes stored curve reserves from the on-chain bonding curve accounts.

Assets registered by the synchronizer only know the virtual reserves carried
in the last trade event. This job reads each curve account and stores the
full state, including real reserves and the graduation flag.
"""

from __future__ import annotations

import time
from collections.abc import Iterable

from indexer.codec.accounts import bonding_curve_address, decode_bonding_curve
from indexer.curve.math import check_reserve_invariants
from indexer.data.store import IndexerStore
from indexer.exceptions import InvariantViolation
from indexer.ledger.client import LedgerSource
from indexer.logging import get_logger
from indexer.models import Asset

logger = get_logger(__name__)


class ReserveRefresher:
    """Mirror bonding curve account state into the assets table."""

    def __init__(self, ledger: LedgerSource, store: IndexerStore, program_id: str) -> None:
        self._ledger = ledger
        self._store = store
        self._program_id = program_id

    async def refresh(self, asset_ids: Iterable[str] | None = None) -> int:
        """Refresh the given assets (all non-graduated ones by default).

        Returns the number of assets written. Failures are logged per asset.
        """
        if asset_ids is None:
            asset_ids = [a.asset_id for a in await self._store.get_assets(active_only=True)]

        refreshed = 0
        for asset_id in asset_ids:
            try:
                if await self._refresh_one(asset_id):
                    refreshed += 1
            except InvariantViolation as e:
                logger.error("reserve_invariant_violation", asset_id=asset_id, error=str(e))
            except Exception:
                logger.warning("reserve_refresh_failed", asset_id=asset_id, exc_info=True)

        logger.info("reserves_refreshed", count=refreshed)
        return refreshed

    async def _refresh_one(self, asset_id: str) -> bool:
        address = bonding_curve_address(asset_id, self._program_id)
        data = await self._ledger.fetch_account_data(address)
        if data is None:
            logger.warning("bonding_curve_account_missing", asset_id=asset_id, address=address)
            return False

        account = decode_bonding_curve(data)
        if account.mint != asset_id:
            raise InvariantViolation(
                f"Curve account {address} belongs to {account.mint}, not {asset_id}"
            )

        asset = Asset(
            asset_id=asset_id,
            virtual_sol_reserves=account.virtual_sol_reserves,
            virtual_token_reserves=account.virtual_token_reserves,
            real_sol_reserves=account.real_sol_reserves,
            real_token_reserves=account.real_token_reserves,
            graduated=account.graduated,
            updated_at=int(time.time()),
        )
        check_reserve_invariants(asset)
        await self._store.upsert_asset(asset)
        logger.debug(
            "asset_reserves_updated",
            asset_id=asset_id,
            real_sol=asset.real_sol_reserves,
            graduated=asset.graduated,
        )
        return True
