"""Chrome DevTools Protocol client for fetching rendered pages.

The browser is started outside this service, e.g.::

    google-chrome --remote-debugging-port=9222 --user-data-dir="$HOME/.chrome-sync-profile"

and logged into the publishing platform, so pages behind a login wall render
with full content. One websocket connection is shared for the whole run;
every page fetch gets its own target (tab) and flattened session.
"""
import asyncio
import functools
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from postsync.config import settings
from postsync.shared.errors import (
    BrowserConnectionError,
    ProtocolCommandError,
    ProtocolTimeoutError,
)

logger = logging.getLogger(__name__)

OUTER_HTML_EXPRESSION = "document.documentElement.outerHTML"


def _default_connector(ws_url: str, open_timeout: float) -> Awaitable[Any]:
    return websockets.connect(ws_url, max_size=None, open_timeout=open_timeout)


class BrowserClient:
    """Client for a remotely debuggable browser process."""

    def __init__(
        self,
        host: str = settings.browser_host,
        port: int = settings.browser_port,
        command_timeout: float = settings.browser_command_timeout,
        discovery_timeout: float = settings.browser_discovery_timeout,
        settle_seconds: float = settings.browser_settle_seconds,
        connector: Optional[Callable[[str], Awaitable[Any]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize browser client."""
        self.discovery_url = f"http://{host}:{port}/json/version"
        self.command_timeout = command_timeout
        self.discovery_timeout = discovery_timeout
        self.settle_seconds = settle_seconds
        self._connector = connector or functools.partial(_default_connector, open_timeout=discovery_timeout)
        self._transport = transport

        self._ws: Optional[Any] = None
        self._reader: Optional[asyncio.Task] = None
        self._message_id = 0
        self._pending: Dict[int, Tuple[str, asyncio.Future]] = {}

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def __aenter__(self) -> "BrowserClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def discover(self) -> str:
        """Ask the discovery endpoint for the browser websocket URL."""
        try:
            async with httpx.AsyncClient(timeout=self.discovery_timeout, transport=self._transport) as client:
                response = await client.get(self.discovery_url)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise BrowserConnectionError(
                f"Browser discovery endpoint {self.discovery_url} unreachable: {e}"
            ) from e

        ws_url = data.get("webSocketDebuggerUrl") if isinstance(data, dict) else None
        if not ws_url:
            raise BrowserConnectionError(f"No webSocketDebuggerUrl in response from {self.discovery_url}")
        return ws_url

    async def is_available(self) -> bool:
        """Check the discovery endpoint without opening a connection."""
        try:
            await self.discover()
            return True
        except BrowserConnectionError:
            return False

    async def connect(self) -> None:
        """Discover the control channel and open the shared connection."""
        if self._ws is not None:
            return

        ws_url = await self.discover()
        try:
            self._ws = await self._connector(ws_url)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            raise BrowserConnectionError(f"Could not open browser connection {ws_url}: {e}") from e

        self._reader = asyncio.create_task(self._read_messages())
        logger.info(f"Connected to browser at {ws_url}")

    async def _read_messages(self) -> None:
        """Route responses to their pending commands until the socket closes."""
        ws = self._ws
        try:
            async for raw in ws:
                try:
                    message = json.loads(raw)
                except ValueError:
                    logger.debug("Ignoring non-JSON message from browser")
                    continue
                if not isinstance(message, dict):
                    logger.debug("Ignoring non-object message from browser")
                    continue

                message_id = message.get("id")
                pending = self._pending.get(message_id) if message_id is not None else None
                if pending is None or pending[1].done():
                    # Events and responses nobody waits for any more
                    continue

                method, future = pending
                if "error" in message:
                    error = message["error"] or {}
                    future.set_exception(
                        ProtocolCommandError(
                            method,
                            error.get("message", "unknown error"),
                            error.get("code"),
                        )
                    )
                else:
                    future.set_result(message.get("result", {}))
        except ConnectionClosed as e:
            logger.debug(f"Browser connection closed: {e}")
        finally:
            self._fail_pending(BrowserConnectionError("Browser connection closed"))

    def _fail_pending(self, error: Exception) -> None:
        for _, future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def send(
        self,
        method: str,
        params: Optional[dict] = None,
        session_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> dict:
        """Send one command and wait for its correlated response."""
        if self._ws is None:
            raise BrowserConnectionError("Not connected")

        self._message_id += 1
        message_id = self._message_id
        message: Dict[str, Any] = {"id": message_id, "method": method, "params": params or {}}
        if session_id:
            message["sessionId"] = session_id

        future = asyncio.get_running_loop().create_future()
        self._pending[message_id] = (method, future)

        timeout = self.command_timeout if timeout is None else timeout
        try:
            await self._ws.send(json.dumps(message))
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise ProtocolTimeoutError(method, timeout) from None
        except ConnectionClosed as e:
            raise BrowserConnectionError(f"Connection lost sending {method}: {e}") from e
        finally:
            self._pending.pop(message_id, None)

    async def fetch_rendered_page(self, url: str) -> str:
        """Render a URL in a fresh target and return the live DOM as HTML."""
        created = await self.send("Target.createTarget", {"url": "about:blank"})
        target_id = created["targetId"]

        try:
            attached = await self.send("Target.attachToTarget", {"targetId": target_id, "flatten": True})
            session_id = attached["sessionId"]

            await self.send("Page.enable", {}, session_id)
            navigation = await self.send("Page.navigate", {"url": url}, session_id)
            if navigation.get("errorText"):
                raise ProtocolCommandError("Page.navigate", f"{navigation['errorText']} ({url})")

            # Let client-side rendering finish
            await asyncio.sleep(self.settle_seconds)

            evaluated = await self.send(
                "Runtime.evaluate",
                {"expression": OUTER_HTML_EXPRESSION, "returnByValue": True},
                session_id,
            )
            if evaluated.get("exceptionDetails"):
                details = evaluated["exceptionDetails"]
                raise ProtocolCommandError("Runtime.evaluate", details.get("text", "script exception"))

            html = (evaluated.get("result") or {}).get("value")
            if not isinstance(html, str):
                raise ProtocolCommandError("Runtime.evaluate", "DOM serialization returned no string")

            logger.debug(f"Rendered {url}: {len(html)} chars of HTML")
            return html
        finally:
            await self._close_target(target_id)

    async def _close_target(self, target_id: str) -> None:
        if self._ws is None:
            return
        try:
            await self.send("Target.closeTarget", {"targetId": target_id})
        except Exception as e:
            logger.warning(f"Failed to close browser target {target_id}: {e}")

    async def close(self) -> None:
        """Close the shared connection. Safe to call more than once."""
        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None

        if ws is not None:
            try:
                await ws.close()
            except Exception as e:
                logger.debug(f"Error closing browser connection: {e}")

        if reader is not None and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass

        self._fail_pending(BrowserConnectionError("Browser connection closed"))
