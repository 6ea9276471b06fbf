"""
Address transaction backlog from a paginated REST API.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any

import httpx
from loguru import logger
from pydantic import ValidationError

from mempool_wallet.models import MempoolWalletError, Transaction

# esplora returns address history newest first, in pages of this size
PAGE_SIZE = 50


class BacklogError(MempoolWalletError):
    """REST failure or invalid payload while fetching an address backlog."""


class BacklogFetcher(ABC):
    """
    Abstract backlog interface.

    Implementations return the transaction history of one address, oldest
    first. The resume hints only allow fetching less history; returning more
    is always correct.
    """

    @abstractmethod
    async def fetch(
        self,
        address: str,
        resume_txid: str | None = None,
        resume_height: int | None = None,
    ) -> list[Transaction]:
        """Get transactions for an address, oldest first"""

    async def close(self) -> None:
        """Close backend connection"""
        pass


class MempoolBacklogFetcher(BacklogFetcher):
    """
    Backlog fetcher for the mempool.space / esplora REST API.

    Pages ``GET {api_url}/address/{address}/txs`` using ``after_txid``. A full
    page of PAGE_SIZE transactions means there may be more.
    """

    def __init__(
        self,
        api_url: str = "https://mempool.space/api",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Initialize the fetcher.

        Args:
            api_url: REST API base URL
            timeout: Request timeout in seconds
            client: Pre-built HTTP client (tests pass one with a mock transport)
        """
        self.api_url = api_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=timeout)

    async def _get_page(self, address: str, after_txid: str | None) -> list[Any]:
        url = f"{self.api_url}/address/{address}/txs"
        params = {"after_txid": after_txid} if after_txid else None
        try:
            response = await self.client.get(url, params=params)
            response.raise_for_status()
            page = response.json()
        except httpx.HTTPError as e:
            logger.error(f"Backlog request failed for {address}: {e}")
            raise BacklogError(f"Failed to fetch transactions for {address}: {e}") from e
        except ValueError as e:
            raise BacklogError(f"Invalid JSON in backlog for {address}: {e}") from e

        if not isinstance(page, list):
            raise BacklogError(f"Expected a list of transactions for {address}")
        return page

    async def fetch(
        self,
        address: str,
        resume_txid: str | None = None,
        resume_height: int | None = None,
    ) -> list[Transaction]:
        """
        Fetch address transactions, oldest first.

        If either hint is given, paging stops once both are satisfied:
        - the transaction ``resume_txid`` has been seen
        - the last transaction of a page is confirmed below ``resume_height``

        Without hints paging continues until a short page is returned.
        """
        limit_requests = resume_txid is not None or resume_height is not None
        found_txid = resume_txid is None
        found_height = resume_height is None

        transactions: list[Transaction] = []
        after_txid: str | None = None
        pages = 0

        while True:
            raw_page = await self._get_page(address, after_txid)
            pages += 1
            try:
                page = [Transaction.model_validate(tx) for tx in raw_page]
            except ValidationError as e:
                raise BacklogError(f"Invalid transaction in backlog for {address}: {e}") from e
            transactions.extend(page)

            if limit_requests and page:
                if not found_txid and any(tx.txid == resume_txid for tx in page):
                    found_txid = True
                last = page[-1]
                if (
                    not found_height
                    and resume_height is not None
                    and last.status.confirmed
                    and last.status.block_height is not None
                    and last.status.block_height < resume_height
                ):
                    found_height = True

            if len(page) < PAGE_SIZE:
                break
            if limit_requests and found_txid and found_height:
                break
            after_txid = page[-1].txid

        logger.debug(f"Fetched {len(transactions)} transactions for {address} in {pages} pages")
        transactions.reverse()
        return transactions

    async def close(self) -> None:
        await self.client.aclose()
