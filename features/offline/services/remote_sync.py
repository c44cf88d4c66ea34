import logging
from typing import Any, Dict, Optional

import aiohttp

from core.config import settings
from features.common.exceptions.soundings_exceptions import SyncFailureError

logger = logging.getLogger(__name__)

class RemoteSyncClient:
    """Posts queued mutations to the remote API."""

    def __init__(self, base_url: Optional[str] = None, timeout: Optional[float] = None):
        self.base_url = (base_url or settings.sync_api_url).rstrip("/")
        self.timeout = timeout or settings.request["timeout"]
        self._session: Optional[aiohttp.ClientSession] = None

    async def _init_session(self) -> aiohttp.ClientSession:
        if not self._session:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout)
            )
        return self._session

    async def close(self):
        if self._session:
            await self._session.close()
            self._session = None

    async def submit(self, item_type: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Send one mutation; raises SyncFailureError unless the remote accepts it."""
        session = await self._init_session()
        url = f"{self.base_url}/sync/{item_type}"
        try:
            async with session.post(url, json=payload) as response:
                if response.status >= 300:
                    body = await response.text()
                    raise SyncFailureError(f"{url} answered {response.status}: {body[:200]}")
                if response.content_type == "application/json":
                    return await response.json()
                return {}
        except aiohttp.ClientError as e:
            raise SyncFailureError(f"{url} unreachable: {str(e)}") from e
