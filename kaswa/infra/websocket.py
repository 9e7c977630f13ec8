import asyncio
import websockets
from typing import Callable, Awaitable, Any
from websockets.protocol import State
from kaswa.core.errors import ConnectionError

class WebSocketTransport:
    """Async WebSocket transport carrying text frames to the gateway."""

    def __init__(self, url: str, open_timeout: float = 20.0):
        self.url = url
        self.open_timeout = open_timeout
        self._ws: Any | None = None
        self._recv_task: asyncio.Task | None = None
        self.on_message: Callable[[str], Awaitable[None]] | None = None
        self.on_disconnect: Callable[[Exception], Awaitable[None]] | None = None

    async def connect(self):
        """Opens the socket and starts the receive loop."""
        try:
            self._ws = await websockets.connect(self.url, open_timeout=self.open_timeout)
        except Exception as e:
            raise ConnectionError(f"Failed to connect to {self.url}: {e}")

        self._recv_task = asyncio.create_task(self._listen_loop())

    async def disconnect(self):
        """Cleanly disconnects without reporting a drop."""
        if self._recv_task:
            self._recv_task.cancel()
            self._recv_task = None
        if self._ws:
            ws = self._ws
            self._ws = None
            await ws.close()
            wait_closed = getattr(ws, "wait_closed", None)
            if callable(wait_closed):
                await wait_closed()

    async def send(self, data: str):
        if not self.is_open():
            raise ConnectionError("WebSocket is disconnected")
        await self._ws.send(data)

    def is_open(self) -> bool:
        ws = self._ws
        if ws is None:
            return False

        # websockets<=11 style API
        if hasattr(ws, "closed"):
            return not bool(getattr(ws, "closed"))

        # websockets>=12 style API
        state = getattr(ws, "state", None)
        if state is None:
            return False
        return state == State.OPEN or state == 1

    async def _listen_loop(self):
        try:
            while True:
                message = await self._ws.recv()
                if self.on_message:
                    if isinstance(message, bytes):
                        message = message.decode("utf-8")
                    # handlers must not block on later frames; the client queues events
                    await self.on_message(message)
        except websockets.exceptions.ConnectionClosed as e:
            self._ws = None
            if self.on_disconnect:
                await self.on_disconnect(e)
        except asyncio.CancelledError:
            pass
        except Exception as e:
            self._ws = None
            if self.on_disconnect:
                await self.on_disconnect(e)
