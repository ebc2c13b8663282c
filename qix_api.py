"""
qix_api.py

Thin wrappers around the engine objects reached through a session handle.

Every engine object lives behind a numeric handle: the Global object is
always -1, and methods such as OpenDoc, GetObject and GetField return a new
handle in `result.qReturn.qHandle`. These classes pair a session with a
handle and expose the calls this client needs.

Copyright:
    (c) 2025 Nutanix Inc. All rights reserved.
"""

import logging
import math
from typing import Any, Dict, List, Optional, Sequence

from engine_errors import EngineResponseError
from qix_session import GLOBAL_HANDLE, EngineSession

log = logging.getLogger(__name__)


def field_value(value: Any) -> Dict[str, Any]:
    """Build a FieldValue for SelectValues: numbers by qNumber, the rest by qText."""
    if isinstance(value, bool):
        return {"qText": str(value).lower()}
    if isinstance(value, (int, float)) and not math.isnan(value):
        return {"qIsNumeric": True, "qNumber": value}
    return {"qText": str(value)}


def _member(result: Any, *path: str, method: str) -> Any:
    node = result
    for key in path:
        if not isinstance(node, dict) or key not in node:
            raise EngineResponseError(
                f"Unexpected {method} response format, missing {'.'.join(path)}: {result}")
        node = node[key]
    return node


def _handle(result: Any, method: str, target: str) -> int:
    ret = result.get("qReturn") if isinstance(result, dict) else None
    handle = ret.get("qHandle") if isinstance(ret, dict) else None
    if handle is None:
        raise EngineResponseError(f"{method} returned no handle for {target}: {result}")
    return handle


class EngineObject:
    """Base for objects addressed by a handle on a session."""

    def __init__(self, session: EngineSession, handle: int):
        self.session = session
        self.handle = handle

    async def _call(self, method: str, params: Any = None) -> Dict[str, Any]:
        return await self.session.call(method, self.handle, params)

    def __repr__(self):
        return f"{type(self).__name__}(handle={self.handle})"


class Global(EngineObject):

    def __init__(self, session: EngineSession):
        super().__init__(session, GLOBAL_HANDLE)

    async def engine_version(self) -> Dict[str, Any]:
        result = await self._call("EngineVersion")
        return _member(result, "qVersion", method="EngineVersion")

    async def get_doc_list(self) -> List[Dict[str, Any]]:
        result = await self._call("GetDocList")
        return _member(result, "qDocList", method="GetDocList")

    async def open_doc(self, doc_name: str, no_data: bool = False) -> "Doc":
        log.info("Opening document %s", doc_name)
        params = {"qDocName": doc_name}
        if no_data:
            params["qNoData"] = True
        result = await self._call("OpenDoc", params)
        return Doc(self.session, _handle(result, "OpenDoc", doc_name))

    async def get_active_doc(self) -> "Doc":
        result = await self._call("GetActiveDoc")
        return Doc(self.session, _handle(result, "GetActiveDoc", "active document"))


class Doc(EngineObject):

    async def get_object(self, object_id: str) -> "GenericObject":
        log.info("Getting object %s", object_id)
        result = await self._call("GetObject", {"qId": object_id})
        return GenericObject(self.session, _handle(result, "GetObject", object_id), object_id)

    async def get_field(self, name: str, state_name: str = "$") -> "Field":
        result = await self._call("GetField", {"qFieldName": name, "qStateName": state_name})
        return Field(self.session, _handle(result, "GetField", name), name)

    async def clear_all(self, locked_also: bool = False):
        await self._call("ClearAll", {"qLockedAlso": locked_also})

    async def get_app_layout(self) -> Dict[str, Any]:
        result = await self._call("GetAppLayout")
        return _member(result, "qLayout", method="GetAppLayout")


class GenericObject(EngineObject):

    def __init__(self, session: EngineSession, handle: int, object_id: Optional[str] = None):
        super().__init__(session, handle)
        self.object_id = object_id

    async def get_layout(self) -> Dict[str, Any]:
        result = await self._call("GetLayout")
        return _member(result, "qLayout", method="GetLayout")

    async def get_hypercube_data(self, pages: Sequence[Dict[str, int]],
                                 path: str = "/qHyperCubeDef") -> List[Dict[str, Any]]:
        """
        Fetch data pages from the object's hypercube.

        Args:
            pages (list): NxPage dicts with qTop, qLeft, qHeight and qWidth.
            path (str): Path to the hypercube definition in the object
                properties.

        Returns:
            list: The qDataPages of the response, one per requested page.

        Raises:
            EngineResponseError: If the response carries no data pages.
        """
        result = await self._call("GetHyperCubeData",
                                  {"qPath": path, "qPages": list(pages)})
        data_pages = _member(result, "qDataPages", method="GetHyperCubeData")
        if not data_pages or "qMatrix" not in data_pages[0]:
            raise EngineResponseError(
                f"Unexpected GetHyperCubeData response format: {result}")
        return data_pages


class Field(EngineObject):

    def __init__(self, session: EngineSession, handle: int, name: str):
        super().__init__(session, handle)
        self.name = name

    async def select_values(self, values: Sequence[Any], toggle: bool = False,
                            soft_lock: bool = False) -> bool:
        log.info("Selecting %s in field %s", list(values), self.name)
        params = {
            "qFieldValues": [field_value(v) for v in values],
            "qToggleMode": toggle,
            "qSoftLock": soft_lock,
        }
        result = await self._call("SelectValues", params)
        return bool(result.get("qReturn"))

    async def select(self, match: str, soft_lock: bool = False) -> bool:
        result = await self._call("Select", {"qMatch": match, "qSoftLock": soft_lock})
        return bool(result.get("qReturn"))

    async def clear(self) -> bool:
        result = await self._call("Clear")
        return bool(result.get("qReturn"))
