import logging
from abc import ABC, abstractmethod
from typing import Optional

import aiohttp

logger = logging.getLogger(__name__)

class Transport(ABC):
    """A persistent, message oriented, bidirectional connection."""

    @abstractmethod
    async def connect(self, url: str) -> None:
        """Open the connection or raise."""

    @abstractmethod
    async def send(self, message: str) -> None:
        pass

    @abstractmethod
    async def receive(self) -> Optional[str]:
        """Next text message, or None once the connection has closed."""

    @abstractmethod
    async def close(self, code: int = 1000) -> None:
        pass

    @property
    @abstractmethod
    def close_code(self) -> Optional[int]:
        pass

class AiohttpWebSocketTransport(Transport):
    """WebSocket client over aiohttp; owns its session."""

    def __init__(self, headers: Optional[dict] = None):
        self.headers = headers or {}
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None

    async def connect(self, url: str) -> None:
        self._session = aiohttp.ClientSession(headers=self.headers)
        try:
            self._ws = await self._session.ws_connect(url, autoping=True)
        except Exception:
            await self._session.close()
            self._session = None
            raise

    async def send(self, message: str) -> None:
        if self._ws is None or self._ws.closed:
            raise ConnectionResetError("websocket is not open")
        await self._ws.send_str(message)

    async def receive(self) -> Optional[str]:
        if self._ws is None:
            return None
        while True:
            msg = await self._ws.receive()
            if msg.type == aiohttp.WSMsgType.TEXT:
                return msg.data
            if msg.type == aiohttp.WSMsgType.BINARY:
                return msg.data.decode("utf-8", errors="replace")
            if msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning(f"Websocket error: {self._ws.exception()}")
                return None
            if msg.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED):
                return None

    async def close(self, code: int = 1000) -> None:
        if self._ws is not None and not self._ws.closed:
            await self._ws.close(code=code)
        if self._session is not None:
            await self._session.close()
            self._session = None

    @property
    def close_code(self) -> Optional[int]:
        return self._ws.close_code if self._ws is not None else None
