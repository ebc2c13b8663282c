"""
hypercube.py

Turns the hypercube of a Qlik object into a plain table.

The layout of an object with a hypercube describes its columns
(`qDimensionInfo` followed by `qMeasureInfo`) and its size (`qSize`). Rows
are fetched with GetHyperCubeData in pages. The engine refuses pages larger
than 10000 cells, so the page height shrinks for wide cubes.

The table is a dict:

    {
        "headers": ["Country", "Sales"],
        "data": [["Sweden", 1200.5], ["Norway", 800]]
    }

Each cell carries the number (`qNum`) when the engine has one, and the text
(`qText`) otherwise.

Copyright:
    (c) 2025 Nutanix Inc. All rights reserved.
"""

import json
import logging
import math
from typing import Any, Dict, Iterator, List, Optional

import aiofiles

from qix_api import GenericObject

log = logging.getLogger(__name__)

DEFAULT_PAGE_HEIGHT = 100
MAX_CELLS_PER_PAGE = 10000


def hypercube_columns(layout: Dict[str, Any]) -> Optional[List[str]]:
    """Return dimension then measure titles, or None if the layout has no hypercube."""
    cube = layout.get("qHyperCube")
    if cube is None:
        return None
    return ([d.get("qFallbackTitle", "") for d in cube.get("qDimensionInfo", [])] +
            [m.get("qFallbackTitle", "") for m in cube.get("qMeasureInfo", [])])


def cell_value(cell: Dict[str, Any]) -> Any:
    num = cell.get("qNum")
    if num is not None and num != "NaN" and not (isinstance(num, float) and math.isnan(num)):
        return num
    return cell.get("qText")


def iter_pages(width: int, total_rows: int, page_height: int = DEFAULT_PAGE_HEIGHT,
               max_rows: Optional[int] = None) -> Iterator[Dict[str, int]]:
    """
    Yield the NxPage requests needed to read a hypercube.

    Args:
        width (int): Number of columns to fetch.
        total_rows (int): Number of rows in the hypercube (qSize.qcy).
        page_height (int): Preferred rows per page.
        max_rows (int): Stop after this many rows, if given.

    Yields:
        dict: qTop, qLeft, qHeight and qWidth of each page.
    """
    if width <= 0 or page_height <= 0:
        return
    height = max(1, min(page_height, MAX_CELLS_PER_PAGE // width))
    limit = total_rows if max_rows is None else min(total_rows, max_rows)
    top = 0
    while top < limit:
        rows = min(height, limit - top)
        yield {"qTop": top, "qLeft": 0, "qHeight": rows, "qWidth": width}
        top += rows


async def fetch_table(obj: GenericObject, page_height: int = DEFAULT_PAGE_HEIGHT,
                      max_rows: Optional[int] = None) -> Optional[Dict[str, List[Any]]]:
    """
    Read the whole hypercube of an object.

    Args:
        obj (GenericObject): Object whose layout holds a hypercube.
        page_height (int): Rows requested per GetHyperCubeData call.
        max_rows (int): Upper bound on the number of rows read.

    Returns:
        dict: Table with "headers" and "data", or None when the object has
        no hypercube.
    """
    layout = await obj.get_layout()
    headers = hypercube_columns(layout)
    if headers is None:
        log.warning("No hypercube found in object %s", obj.object_id)
        return None

    cube = layout["qHyperCube"]
    log.info("Found hypercube with %d dimensions and %d measures",
             len(cube.get("qDimensionInfo", [])), len(cube.get("qMeasureInfo", [])))

    size = cube.get("qSize") or {}
    width = size.get("qcx", len(headers))
    total_rows = size.get("qcy", page_height)

    table = {"headers": headers, "data": []}
    for page in iter_pages(width, total_rows, page_height, max_rows):
        data_pages = await obj.get_hypercube_data([page])
        matrix = data_pages[0]["qMatrix"]
        log.debug("Page at row %d returned %d rows", page["qTop"], len(matrix))
        table["data"].extend([cell_value(cell) for cell in row] for row in matrix)
        if len(matrix) < page["qHeight"]:
            break

    log.info("Received %d rows of hypercube data", len(table["data"]))
    return table


async def save_table(table: Any, path: str) -> str:
    """Write the table (or any other JSON value) as indented JSON and return the text written."""
    text = json.dumps(table, indent=4)
    async with aiofiles.open(path, "w") as f:
        await f.write(text)
    log.info("Data saved to %s", path)
    return text
