"""
valleydrop/chain.py

Blockfrost chain-data client.

Provides:
- Address balance (implements BalanceQuery for the deposit watcher and
  fee step)
- Policy holder enumeration (a recipient source)

HTTP is done with requests in a worker thread (trio.to_thread), so a slow
Blockfrost response never blocks other sessions.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

import requests
import trio

from .config import BLOCKFROST_MAINNET_URL
from .errors import ConfigurationError, TransientInfrastructureError
from .settlement import BalanceQuery

logger = logging.getLogger("valleydrop.chain")

REQUEST_TIMEOUT = 30        # seconds
PAGE_SIZE = 100             # Blockfrost max page size
MAX_PAGES = 10_000


class BlockfrostClient(BalanceQuery):
    """
    Minimal Blockfrost REST client.

    Example:
        client = BlockfrostClient(api_key)
        lovelace = await client.query("addr1...")
        holders = await client.policy_holders(policy_id)
    """

    def __init__(
        self,
        api_key: str,
        base_url: str = BLOCKFROST_MAINNET_URL,
        timeout: float = REQUEST_TIMEOUT,
        http: Optional[requests.Session] = None,
    ):
        if not api_key:
            raise ConfigurationError("BLOCKFROST_API_KEY is required")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = http or requests.Session()
        self._http.headers.update({"project_id": api_key})

    def _get_sync(self, path: str, params: Optional[Dict[str, Any]] = None) -> Tuple[int, Any]:
        url = f"{self.base_url}/{path.lstrip('/')}"
        try:
            response = self._http.get(url, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise TransientInfrastructureError(f"blockfrost {path}: {e}")

        if response.status_code == 404:
            return 404, None
        if response.status_code >= 300:
            raise TransientInfrastructureError(
                f"blockfrost {path}: HTTP {response.status_code}: {response.text}"
            )
        try:
            return response.status_code, response.json()
        except ValueError as e:
            raise TransientInfrastructureError(f"blockfrost {path}: bad JSON: {e}")

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Tuple[int, Any]:
        return await trio.to_thread.run_sync(self._get_sync, path, params)

    # ------------------------------------------------------------------------
    # BalanceQuery
    # ------------------------------------------------------------------------

    async def query(self, address: str) -> int:
        """Lovelace held by an address. Unused addresses (404) hold 0."""
        status, data = await self._get(f"addresses/{address}")
        if status == 404:
            return 0
        return parse_lovelace(data)

    # ------------------------------------------------------------------------
    # Recipient source
    # ------------------------------------------------------------------------

    async def policy_assets(self, policy_id: str) -> List[str]:
        """All asset ids minted under a policy."""
        assets: List[str] = []
        for page in range(1, MAX_PAGES + 1):
            status, data = await self._get(
                f"assets/policy/{policy_id}", {"page": page, "count": PAGE_SIZE}
            )
            if status == 404 or not data:
                break
            assets.extend(item["asset"] for item in data if "asset" in item)
            if len(data) < PAGE_SIZE:
                break
        return assets

    async def asset_addresses(self, asset: str) -> List[Tuple[str, int]]:
        """Current holders of a single asset."""
        holders: List[Tuple[str, int]] = []
        for page in range(1, MAX_PAGES + 1):
            status, data = await self._get(
                f"assets/{asset}/addresses", {"page": page, "count": PAGE_SIZE}
            )
            if status == 404 or not data:
                break
            for rec in data:
                try:
                    qty = int(rec.get("quantity", "0"))
                except (TypeError, ValueError):
                    continue
                if qty > 0:
                    holders.append((rec["address"], qty))
            if len(data) < PAGE_SIZE:
                break
        return holders

    async def policy_holders(self, policy_id: str) -> List[Tuple[str, int]]:
        """
        Holders of every asset under a policy, aggregated by address.

        Returns:
            (address, quantity) pairs sorted by address
        """
        assets = await self.policy_assets(policy_id)
        logger.info(f"Policy {policy_id}: {len(assets)} assets")

        counts: Dict[str, int] = {}
        for asset in assets:
            for address, qty in await self.asset_addresses(asset):
                counts[address] = counts.get(address, 0) + qty

        logger.info(f"Policy {policy_id}: {len(counts)} holders")
        return sorted(counts.items())


def parse_lovelace(data: Any) -> int:
    """Extract the lovelace amount from a Blockfrost address payload."""
    if not isinstance(data, dict):
        raise TransientInfrastructureError(f"Unexpected address payload: {data!r}")
    for amount in data.get("amount") or []:
        if amount.get("unit") == "lovelace":
            try:
                return int(amount.get("quantity", "0"))
            except (TypeError, ValueError):
                raise TransientInfrastructureError(f"Bad lovelace quantity: {amount!r}")
    return 0
