"""Solana JSON-RPC ledger source via httpx.

Only three RPC methods are needed: getSignaturesForAddress,
getTransaction and getAccountInfo. Transport failures and RPC error
objects both surface as SourceUnavailableError; a null result means the
ledger has nothing for that key. No retries happen here -- the scheduled
jobs that call the synchronizer retry on their next pass.
"""

import base64
import itertools

import httpx

from indexer.config import LedgerSettings
from indexer.exceptions import SourceUnavailableError
from indexer.ledger.client import LedgerSource, LedgerTransaction
from indexer.logging import get_logger

logger = get_logger(__name__)


class SolanaRpcClient(LedgerSource):
    """Concrete ledger source over a Solana RPC endpoint."""

    def __init__(
        self,
        settings: LedgerSettings,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._settings = settings
        self._client = http_client or httpx.AsyncClient(
            timeout=settings.request_timeout_seconds
        )
        self._request_ids = itertools.count(1)

    async def _call(self, method: str, params: list) -> object:
        """Send one JSON-RPC request and return its ``result``."""
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._request_ids),
            "method": method,
            "params": params,
        }
        try:
            response = await self._client.post(self._settings.rpc_url, json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise SourceUnavailableError(f"{method} failed: {e}") from e

        if "error" in body:
            error = body["error"]
            raise SourceUnavailableError(
                f"{method} RPC error {error.get('code')}: {error.get('message')}"
            )
        return body.get("result")

    async def list_recent_transaction_ids(self, account: str, limit: int) -> list[str]:
        capped = max(1, min(limit, self._settings.max_signatures_per_request))
        result = await self._call(
            "getSignaturesForAddress",
            [account, {"limit": capped, "commitment": self._settings.commitment}],
        )
        signatures = [entry["signature"] for entry in result or []]
        logger.debug(
            "fetched_signatures",
            account=account,
            requested=limit,
            returned=len(signatures),
        )
        return signatures

    async def fetch_transaction(self, signature: str) -> LedgerTransaction | None:
        result = await self._call(
            "getTransaction",
            [
                signature,
                {
                    "commitment": self._settings.commitment,
                    "encoding": "json",
                    "maxSupportedTransactionVersion": 0,
                },
            ],
        )
        if result is None:
            return None

        meta = result.get("meta") or {}
        return LedgerTransaction(
            signature=signature,
            log_lines=list(meta.get("logMessages") or []),
            confirmed_at=result.get("blockTime"),
        )

    async def fetch_account_data(self, address: str) -> bytes | None:
        result = await self._call(
            "getAccountInfo",
            [address, {"commitment": self._settings.commitment, "encoding": "base64"}],
        )
        value = (result or {}).get("value")
        if value is None:
            return None
        encoded, _encoding = value["data"]
        return base64.b64decode(encoded)

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()
        logger.info("ledger_client_closed", rpc_url=self._settings.rpc_url)
