"""
qix_session.py

WebSocket JSON-RPC session with the Qlik Sense engine (QIX).

A session owns one WebSocket connection. Requests are numbered from 1 and
every response is matched back to its request by the JSON-RPC `id`, so
several calls may be in flight on the same session and complete in any
order. Messages without an `id` are engine notifications (for example
`OnConnected`, sent right after the upgrade) and are recorded separately.

Usage:
    async with EngineSession(config, app_id) as session:
        result = await session.call("OpenDoc", -1, [app_id])

Copyright:
    (c) 2025 Nutanix Inc. All rights reserved.
"""

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Set, Tuple

import aiohttp

from engine_config import EngineConfig, create_ssl_context
from engine_errors import (EngineConnectionError, EngineResponseError,
                           EngineRpcError, EngineTimeoutError)

log = logging.getLogger(__name__)

GLOBAL_HANDLE = -1


class EngineSession:
    """One WebSocket connection to the engine, shared by all calls made on it."""

    def __init__(self, config: EngineConfig, app_id: Optional[str] = None):
        self._config = config
        self._app_id = app_id
        self._http: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._next_id = 1
        self._pending: Dict[int, Tuple[str, asyncio.Future]] = {}
        self._notifications: Dict[str, Any] = {}
        self._notification_waiters: Dict[str, List[asyncio.Future]] = {}
        self.session_state: Optional[str] = None
        self.changed_handles: Set[int] = set()
        self.closed_handles: Set[int] = set()

    async def __aenter__(self) -> "EngineSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    @property
    def app_id(self) -> Optional[str]:
        return self._app_id

    @property
    def closed(self) -> bool:
        return self._ws is None or self._ws.closed

    async def open(self):
        """
        Connect to the engine and perform the WebSocket upgrade.

        The upgrade request carries the `X-Qlik-User` header naming the
        user the session runs as. Once connected, a background task reads
        every incoming frame and routes it to the waiting caller.

        Raises:
            EngineConfigError: If the client certificates cannot be loaded.
            EngineConnectionError: If the TCP/TLS connection or the
                WebSocket handshake fails, or does not finish within
                `connect_timeout`.
        """
        if not self.closed:
            return
        await self.close()

        ssl_ctx = create_ssl_context(self._config) if self._config.secure else False
        connector = aiohttp.TCPConnector(ssl=ssl_ctx)
        self._http = aiohttp.ClientSession(connector=connector)

        uri = self._config.url(self._app_id)
        headers = {"X-Qlik-User": self._config.user_header()}
        log.info("Connecting to engine WebSocket: %s", uri)
        try:
            self._ws = await asyncio.wait_for(
                self._http.ws_connect(
                    uri,
                    headers=headers,
                    max_msg_size=self._config.max_message_size,
                ),
                self._config.connect_timeout,
            )
        except aiohttp.WSServerHandshakeError as e:
            await self._http.close()
            self._http = None
            raise EngineConnectionError(
                f"WebSocket handshake with {uri} failed: {e.status} {e.message}") from e
        except asyncio.TimeoutError as e:
            await self._http.close()
            self._http = None
            raise EngineConnectionError(
                f"Timed out connecting to {uri} after {self._config.connect_timeout} seconds") from e
        except (aiohttp.ClientError, OSError) as e:
            await self._http.close()
            self._http = None
            raise EngineConnectionError(f"Error connecting to engine at {uri}: {e}") from e

        log.info("Connected! WebSocket handshake successful")
        self._reader = asyncio.create_task(self._read_loop())

    async def close(self):
        """Close the connection. Calls still waiting fail with EngineConnectionError."""
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            except Exception as e:
                log.error("Engine reader stopped with an error: %s", e)
            self._reader = None
        if self._ws is not None:
            if not self._ws.closed:
                await self._ws.close()
            self._ws = None
            log.info("WebSocket connection closed")
        if self._http is not None:
            await self._http.close()
            self._http = None

    async def call(self, method: str, handle: int = GLOBAL_HANDLE,
                   params: Any = None) -> Dict[str, Any]:
        """
        Send one JSON-RPC request and wait for the matching response.

        Args:
            method (str): Engine method name, e.g. "GetLayout".
            handle (int): Handle of the object the method is invoked on;
                -1 addresses the Global object.
            params (list or dict): Method parameters, positional or named.

        Returns:
            dict: The `result` member of the response.

        Raises:
            EngineRpcError: If the engine returned an error object.
            EngineTimeoutError: If no response arrived within
                `request_timeout`.
            EngineConnectionError: If the session is not open or the
                connection dropped before the response arrived.
            EngineResponseError: If the response had neither result nor
                error.
        """
        self._ensure_open()
        request_id = self._next_id
        self._next_id += 1
        request = {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": method,
            "handle": handle,
            "params": params if params is not None else [],
        }
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (method, future)
        payload = json.dumps(request)
        log.debug("Sending request %d: %s", request_id, payload)
        try:
            await self._ws.send_str(payload)
            return await asyncio.wait_for(future, self._config.request_timeout)
        except asyncio.TimeoutError as e:
            raise EngineTimeoutError(
                f"{method} (id {request_id}) got no response within "
                f"{self._config.request_timeout} seconds") from e
        except (aiohttp.ClientError, ConnectionError) as e:
            raise EngineConnectionError(f"Failed to send {method}: {e}") from e
        finally:
            self._pending.pop(request_id, None)

    async def wait_for_notification(self, method: str,
                                    timeout: Optional[float] = None) -> Any:
        """Return the params of a notification, waiting for it if it has not arrived yet."""
        if method in self._notifications:
            return self._notifications[method]
        self._ensure_open()
        timeout = timeout if timeout is not None else self._config.request_timeout
        future = asyncio.get_running_loop().create_future()
        waiters = self._notification_waiters.setdefault(method, [])
        waiters.append(future)
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as e:
            raise EngineTimeoutError(
                f"No {method} notification within {timeout} seconds") from e
        finally:
            if future in waiters:
                waiters.remove(future)

    def notification(self, method: str) -> Any:
        return self._notifications.get(method)

    def _ensure_open(self):
        if self.closed:
            raise EngineConnectionError("Engine session is not open")

    async def _read_loop(self):
        ws = self._ws
        try:
            async for msg in ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    self._dispatch(msg.data)
                elif msg.type == aiohttp.WSMsgType.BINARY:
                    log.debug("Ignoring binary frame of %d bytes", len(msg.data))
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    log.error("WebSocket error: %s", ws.exception())
                    break
            log.info("Engine closed the WebSocket (code %s)", ws.close_code)
        finally:
            self._fail_waiters()

    def _dispatch(self, data: str):
        log.debug("Message received: %s", data)
        try:
            message = json.loads(data)
        except ValueError as e:
            log.warning("Discarding frame that is not valid JSON: %s", e)
            return
        if not isinstance(message, dict):
            log.warning("Discarding unexpected message: %s", data[:200])
            return

        self._track_handles(self.changed_handles, message.get("change"), "change")
        self._track_handles(self.closed_handles, message.get("close"), "close")

        msg_id = message.get("id")
        if msg_id is None:
            if isinstance(message.get("method"), str):
                self._on_notification(message["method"], message.get("params"))
            else:
                log.warning("Discarding message without id: %s", data[:200])
            return

        if not isinstance(msg_id, int) or isinstance(msg_id, bool):
            log.warning("Discarding message with invalid id: %s", data[:200])
            return

        entry = self._pending.pop(msg_id, None)
        if entry is None:
            log.warning("No pending request for response id %s", msg_id)
            return
        method, future = entry
        if future.done():
            return
        if "error" in message:
            future.set_exception(EngineRpcError(method, message["error"]))
        elif "result" in message:
            future.set_result(message["result"])
        else:
            future.set_exception(EngineResponseError(
                f"{method} response has neither result nor error: {data[:200]}"))

    @staticmethod
    def _track_handles(handles: Set[int], members: Any, name: str):
        if members is None:
            return
        if not isinstance(members, list):
            log.warning("Ignoring malformed %s member: %r", name, members)
            return
        handles.update(h for h in members if isinstance(h, int))

    def _on_notification(self, method: str, params: Any):
        log.info("Engine notification %s: %s", method, params)
        if method == "OnConnected" and isinstance(params, dict):
            self.session_state = params.get("qSessionState")
        self._notifications[method] = params
        for future in self._notification_waiters.pop(method, []):
            if not future.done():
                future.set_result(params)

    def _fail_waiters(self):
        pending, self._pending = self._pending, {}
        for method, future in pending.values():
            if not future.done():
                future.set_exception(EngineConnectionError(
                    f"Connection closed while waiting for {method} response"))
        waiters, self._notification_waiters = self._notification_waiters, {}
        for method, futures in waiters.items():
            for future in futures:
                if not future.done():
                    future.set_exception(EngineConnectionError(
                        f"Connection closed while waiting for {method} notification"))
