"""JSON-RPC client with endpoint fallback."""
from __future__ import annotations

import asyncio
import logging
import ssl
from typing import Any

import aiohttp
import certifi

from ..config import ChainConfig
from ..exceptions import ExternalFailure

logger = logging.getLogger(__name__)


class JsonRpcClient:
    """JSON-RPC 2.0 client that rotates to the next endpoint on failure.

    The last endpoint that answered becomes the first one tried next time.
    """

    def __init__(self, config: ChainConfig) -> None:
        if not config.rpc_endpoints:
            raise ValueError("At least one RPC endpoint is required")
        self.endpoints = list(config.rpc_endpoints)
        self.timeout = config.rpc_timeout
        self.current_rpc_index = 0
        self._request_id = 0

    async def rpc_call(self, method: str, params: list[Any]) -> Any:
        """Make RPC call with fallback to alternative endpoints.

        Raises:
            ExternalFailure: every endpoint failed; ``cause`` is the last error.
        """
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

        ssl_context = ssl.create_default_context(cafile=certifi.where())

        last_error: Exception | None = None
        for attempt in range(len(self.endpoints)):
            rpc_index = (self.current_rpc_index + attempt) % len(self.endpoints)
            rpc_url = self.endpoints[rpc_index]

            try:
                connector = aiohttp.TCPConnector(ssl=ssl_context)
                async with aiohttp.ClientSession(connector=connector) as session:
                    async with session.post(
                        rpc_url,
                        json=payload,
                        timeout=aiohttp.ClientTimeout(total=self.timeout),
                    ) as response:
                        result = await response.json()
                        if "error" in result:
                            raise ExternalFailure(f"RPC error from {method}: {result['error']}")

                        if rpc_index != self.current_rpc_index:
                            logger.info("Switched to RPC endpoint: %s", rpc_url)
                            self.current_rpc_index = rpc_index

                        return result.get("result")
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, ExternalFailure) as e:
                last_error = e
                logger.warning("RPC endpoint %s failed for %s: %s", rpc_url, method, e)
                if attempt < len(self.endpoints) - 1:
                    logger.info("Trying next endpoint...")

        raise ExternalFailure(f"All RPC endpoints failed for {method}", last_error)
