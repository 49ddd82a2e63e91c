import asyncio
import aiohttp
import json
import logging
from pathlib import Path
from typing import Any

from core.exceptions import AbiNotFoundError
from core.redis.providers import CacheService
from indexer.entities import ContractDescriptor


class ABIService:
    """
    Resolves the ABI of a contract descriptor.

    Lookup order: inline ``abi``, ``abi_path`` file, then the explorer API
    (cached in Redis).

    Parameters
    ----------
    cache_service : CacheService
        Cache service for storing fetched ABIs
    logger : logging.Logger
        Logger instance
    api_url : str
        Etherscan-compatible API endpoint
    api_key : str
        Explorer API key
    """

    CACHE_TTL = 86400 * 7

    def __init__(
        self,
        cache_service: CacheService,
        logger: logging.Logger,
        api_url: str = "https://api.etherscan.io/api",
        api_key: str = ""
    ):
        self.cache = cache_service
        self.logger = logger
        self.api_url = api_url
        self.api_key = api_key

    async def resolve(self, descriptor: ContractDescriptor) -> ContractDescriptor:
        """
        Return the descriptor with its ABI filled in.

        Parameters
        ----------
        descriptor : ContractDescriptor
            Contract descriptor

        Returns
        -------
        ContractDescriptor
            Descriptor carrying a non-empty ABI

        Raises
        ------
        AbiNotFoundError
            If no source provides an ABI
        """
        if descriptor.abi:
            return descriptor

        if descriptor.abi_path:
            abi = self.load_file(descriptor.abi_path)
        else:
            abi = await self.get_abi(descriptor.address)

        if not abi:
            raise AbiNotFoundError(f"No ABI available for {descriptor.name} ({descriptor.address})")
        return descriptor.model_copy(update={"abi": abi})

    @staticmethod
    def load_file(path: str) -> list[dict[str, Any]]:
        """
        Read an ABI file: a raw ABI array or an artifact with an ``abi`` key.
        """
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise AbiNotFoundError(f"Failed to load ABI from {path}: {e}") from e

        if isinstance(data, dict) and isinstance(data.get("abi"), list):
            return data["abi"]
        if isinstance(data, list):
            return data
        raise AbiNotFoundError(f"Invalid ABI format in {path}")

    async def get_abi(self, contract_address: str) -> list[dict[str, Any]]:
        """
        Get contract ABI from cache or the explorer API.

        Parameters
        ----------
        contract_address : str
            Contract address

        Returns
        -------
        list[dict[str, Any]]
            Contract ABI, empty when the explorer has none
        """
        cache_key = f"abi:{contract_address.lower()}"

        cached = await self.cache.get(cache_key)
        if cached and isinstance(cached, list):
            self.logger.info(f"ABI found in cache for {contract_address}")
            return cached

        abi = await self._fetch_from_explorer(contract_address)
        if abi:
            self.logger.info(f"ABI fetched from explorer for {contract_address}: {len(abi)} items")
            await self.cache.set(cache_key, abi, ttl=self.CACHE_TTL)
        return abi

    async def _fetch_from_explorer(self, contract_address: str) -> list[dict[str, Any]]:
        params = {
            "module": "contract",
            "action": "getabi",
            "address": contract_address,
        }
        if self.api_key:
            params["apikey"] = self.api_key

        try:
            timeout = aiohttp.ClientTimeout(total=15)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self.api_url, params=params) as response:
                    if response.status != 200:
                        self.logger.warning(f"Explorer returned HTTP {response.status} for {contract_address}")
                        return []
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            self.logger.warning(f"Failed to fetch ABI for {contract_address}: {e}")
            return []

        if isinstance(data, dict) and data.get("status") == "1" and data.get("result"):
            try:
                return json.loads(data["result"])
            except ValueError as e:
                self.logger.warning(f"Explorer returned an invalid ABI for {contract_address}: {e}")
        return []
