"""
fake_engine.py

In-process stand-in for the Qlik Sense engine, used by the tests.

Serves `/app/...` WebSocket upgrades with aiohttp and answers the handful of
JSON-RPC methods the client uses, from a small in-memory app with one chart
object (`CHART`, a hypercube of Country/Sales) and one text object (`TEXT`,
no hypercube).

Copyright:
    (c) 2025 Nutanix Inc. All rights reserved.
"""

import asyncio
import json
import logging

from aiohttp import web

log = logging.getLogger(__name__)

APP_ID = "1f8ebe62-f436-4a90-a878-510c022c3326"
DOC_HANDLE = 1


def make_rows(count):
    return [
        [{"qText": f"Country {i}", "qNum": "NaN", "qElemNumber": i},
         {"qText": f"{i * 1.5:g}", "qNum": i * 1.5, "qElemNumber": 0}]
        for i in range(count)
    ]


class FakeRpcError(Exception):

    def __init__(self, code, message, parameter=None):
        super().__init__(message)
        self.error = {"code": code, "message": message}
        if parameter is not None:
            self.error["parameter"] = parameter


class FakeEngine:
    """Records every request and answers it from canned app data."""

    def __init__(self, row_count=250):
        self.rows = make_rows(row_count)
        self.paths = []
        self.headers = []
        self.requests = []
        self.responses = []
        self.selections = {}
        self.cleared = False
        self.send_connected = True
        self.reject = False
        self.greeting_frames = []
        self.delays = {}
        self.silent = set()
        self.crash_on = set()
        self._handles = {}
        self._next_handle = DOC_HANDLE + 1

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/app/{tail:.*}", self.websocket_handler)
        return app

    async def websocket_handler(self, request: web.Request):
        self.paths.append(request.path)
        self.headers.append(dict(request.headers))
        if self.reject:
            return web.Response(status=403, text="Forbidden")

        ws = web.WebSocketResponse()
        await ws.prepare(request)
        if self.send_connected:
            await ws.send_str(json.dumps({
                "jsonrpc": "2.0",
                "method": "OnConnected",
                "params": {"qSessionState": "SESSION_CREATED"},
            }))
        for frame in self.greeting_frames:
            if isinstance(frame, bytes):
                await ws.send_bytes(frame)
            else:
                await ws.send_str(frame)

        tasks = []
        async for msg in ws:
            if msg.type == web.WSMsgType.TEXT:
                tasks.append(asyncio.create_task(self._respond(ws, json.loads(msg.data))))
        await asyncio.gather(*tasks, return_exceptions=True)
        return ws

    async def _respond(self, ws, req):
        self.requests.append(req)
        method = req["method"]
        log.debug("Fake engine received %s on handle %s", method, req["handle"])
        if method in self.delays:
            await asyncio.sleep(self.delays[method])
        if method in self.crash_on:
            await ws.close()
            return
        if method in self.silent:
            return
        response = {"jsonrpc": "2.0", "id": req["id"]}
        try:
            response["result"] = self.dispatch(method, req["handle"], req.get("params"))
        except FakeRpcError as e:
            response["error"] = e.error
        self.responses.append(response)
        await ws.send_str(json.dumps(response))

    def _new_handle(self, kind, name):
        handle = self._next_handle
        self._next_handle += 1
        self._handles[handle] = (kind, name)
        return handle

    def layout(self, object_id):
        if object_id == "CHART":
            return {
                "qInfo": {"qId": "CHART", "qType": "table"},
                "qHyperCube": {
                    "qDimensionInfo": [{"qFallbackTitle": "Country"}],
                    "qMeasureInfo": [{"qFallbackTitle": "Sales"}],
                    "qSize": {"qcx": 2, "qcy": len(self.rows)},
                },
            }
        return {"qInfo": {"qId": object_id, "qType": "text-image"}, "markdown": "hello"}

    def dispatch(self, method, handle, params):
        if handle == -1:
            if method == "EngineVersion":
                return {"qVersion": {"qComponentVersion": "12.1306.0"}}
            if method == "GetDocList":
                return {"qDocList": [{"qDocName": "Sales.qvf", "qDocId": APP_ID}]}
            if method == "OpenDoc":
                name = params["qDocName"]
                if name != APP_ID:
                    raise FakeRpcError(1002, "App not found", name)
                return {"qReturn": {"qType": "Doc", "qHandle": DOC_HANDLE, "qGenericId": APP_ID}}
        elif handle == DOC_HANDLE:
            if method == "GetObject":
                if params["qId"] not in ("CHART", "TEXT"):
                    return {"qReturn": {"qType": None, "qHandle": None}}
                return {"qReturn": {"qType": "GenericObject",
                                    "qHandle": self._new_handle("object", params["qId"])}}
            if method == "GetField":
                return {"qReturn": {"qType": "Field",
                                    "qHandle": self._new_handle("field", params["qFieldName"])}}
            if method == "GetAppLayout":
                return {"qLayout": {"qTitle": "Sales", "qFileName": APP_ID}}
            if method == "ClearAll":
                self.cleared = True
                self.selections = {}
                return {}
        elif handle in self._handles:
            kind, name = self._handles[handle]
            if kind == "object" and method == "GetLayout":
                return {"qLayout": self.layout(name)}
            if kind == "object" and method == "GetHyperCubeData":
                pages = []
                for page in params["qPages"]:
                    top, height = page["qTop"], page["qHeight"]
                    pages.append({"qArea": page, "qMatrix": self.rows[top:top + height]})
                return {"qDataPages": pages}
            if kind == "field" and method == "SelectValues":
                self.selections[name] = params["qFieldValues"]
                return {"qReturn": True}
        raise FakeRpcError(-32601, "Method not found", method)
