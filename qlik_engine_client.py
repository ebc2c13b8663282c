#!/usr/bin/env python3

"""
qlik_engine_client.py

Command line client for the Qlik Sense engine (QIX) JSON-RPC API.

Connects to the engine over a certificate-authenticated WebSocket and
either reports on the engine or extracts the hypercube of one object into a
JSON file.

Usage:
    python3 qlik_engine_client.py engine-info [--output GetEngineInfo.txt]
    python3 qlik_engine_client.py docs [--output docs.json]
    python3 qlik_engine_client.py healthcheck
    python3 qlik_engine_client.py hypercube --app_id <app> --object_id <obj>
        [--select FIELD=VALUE ...] [--clear] [--output hypercube_data.json]

Shared options select the engine (--host, --port), the certificate
directory (--cert_dir) and the user the session runs as (--user_directory,
--user_id).

Copyright:
    (c) 2025 Nutanix Inc. All rights reserved.
"""

import argparse
import asyncio
import inspect
import json
import logging
import sys
from typing import Any, Dict, List, Optional, Tuple

from engine_config import DEFAULT_PORT, EngineConfig
from engine_errors import EngineError, EngineTimeoutError
from engine_health import get_engine_health
from hypercube import DEFAULT_PAGE_HEIGHT, fetch_table, save_table
from qix_api import Global
from qix_session import EngineSession

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s,%(msecs)03dZ [%(levelname)8s] (%(filename)s:%(lineno)s) %(message)s"
)
log = logging.getLogger(__name__)


def parse_selection(text: str) -> Tuple[str, Any]:
    """Parse FIELD=VALUE; values that read as numbers are selected numerically."""
    field, sep, value = text.partition("=")
    if not sep or not field:
        raise argparse.ArgumentTypeError(f"expected FIELD=VALUE, got {text!r}")
    for convert in (int, float):
        try:
            return field, convert(value)
        except ValueError:
            pass
    return field, value


def positive_int(text: str) -> int:
    """argparse type for counts that must be at least 1."""
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {text!r}") from None
    if value <= 0:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value}")
    return value


def group_selections(selections: List[Tuple[str, Any]]) -> Dict[str, List[Any]]:
    grouped: Dict[str, List[Any]] = {}
    for field, value in selections:
        grouped.setdefault(field, []).append(value)
    return grouped


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--host", default="localhost", help="Engine hostname (default: localhost)")
    common.add_argument("--port", type=int, default=DEFAULT_PORT,
                        help=f"Engine port (default: {DEFAULT_PORT})")
    common.add_argument("--cert_dir", default="certs",
                        help="Directory with client.pem, client_key.pem and root.pem (default: certs)")
    common.add_argument("--user_directory", default="internal",
                        help="User directory for X-Qlik-User (default: internal)")
    common.add_argument("--user_id", default="sa_engine", help="User id for X-Qlik-User (default: sa_engine)")
    common.add_argument("--identity", help="Session identity, to share an engine session between connections")
    common.add_argument("--insecure_transport", action="store_true",
                        help="Connect with plain ws:// instead of wss://")
    common.add_argument("--verify_peer", action="store_true",
                        help="Verify the engine certificate against root.pem")
    common.add_argument("--timeout", type=float, default=10.0,
                        help="Seconds to wait for each engine response (default: 10)")
    common.add_argument("--debug", action="store_true", help="Log every frame sent and received")

    parser = argparse.ArgumentParser(
        description="Client for the Qlik Sense engine JSON-RPC API.",
        usage=inspect.cleandoc("""
            %(prog)s <command> [options]
        """)
    )
    commands = parser.add_subparsers(dest="command", required=True)

    info = commands.add_parser("engine-info", parents=[common],
                               help="Save the engine version and session state")
    info.add_argument("--output", default="GetEngineInfo.txt",
                      help="File to write (default: GetEngineInfo.txt)")

    docs = commands.add_parser("docs", parents=[common], help="List the documents on the engine")
    docs.add_argument("--output", help="Also write the list to this JSON file")

    commands.add_parser("healthcheck", parents=[common], help="Query /engine/healthcheck")

    cube = commands.add_parser("hypercube", parents=[common],
                               help="Save the hypercube data of an object")
    cube.add_argument("--app_id", required=True, help="App (document) id")
    cube.add_argument("--object_id", required=True, help="Object id inside the app")
    cube.add_argument("--select", type=parse_selection, action="append", default=[],
                      metavar="FIELD=VALUE", help="Select a field value before reading (repeatable)")
    cube.add_argument("--clear", action="store_true", help="Clear all selections first")
    cube.add_argument("--page_height", type=positive_int, default=DEFAULT_PAGE_HEIGHT,
                      help=f"Rows per data page (default: {DEFAULT_PAGE_HEIGHT})")
    cube.add_argument("--max_rows", type=positive_int, help="Read at most this many rows")
    cube.add_argument("--output", default="hypercube_data.json",
                      help="File to write (default: hypercube_data.json)")
    return parser.parse_args(argv)


def config_from_args(args: argparse.Namespace) -> EngineConfig:
    return EngineConfig(
        host=args.host,
        port=args.port,
        secure=not args.insecure_transport,
        cert_dir=args.cert_dir,
        verify_peer=args.verify_peer,
        user_directory=args.user_directory,
        user_id=args.user_id,
        identity=args.identity,
        request_timeout=args.timeout,
    )


async def run_engine_info(config: EngineConfig, output: str) -> Dict[str, Any]:
    async with EngineSession(config) as session:
        try:
            await session.wait_for_notification("OnConnected")
        except EngineTimeoutError as e:
            log.warning("%s", e)
        version = await Global(session).engine_version()
    info = {"qSessionState": session.session_state, "qVersion": version}
    log.info("Engine info: %s", info)
    await save_table(info, output)
    return info


async def run_doc_list(config: EngineConfig, output: Optional[str]) -> List[Dict[str, Any]]:
    async with EngineSession(config) as session:
        docs = await Global(session).get_doc_list()
    for doc in docs:
        log.info("%s  %s", doc.get("qDocId"), doc.get("qDocName"))
    if output:
        await save_table(docs, output)
    return docs


async def run_hypercube(config: EngineConfig, app_id: str, object_id: str,
                        selections: Dict[str, List[Any]], clear: bool = False,
                        page_height: int = DEFAULT_PAGE_HEIGHT,
                        max_rows: Optional[int] = None,
                        output: str = "hypercube_data.json") -> Optional[Dict[str, Any]]:
    """
    Open an app, apply selections and save the hypercube of one object.

    All calls run on a single engine session, so the selections made
    through GetField/SelectValues are in effect when the data is paged.

    Returns:
        dict: The table written to `output`, or None when the object has no
        hypercube.
    """
    async with EngineSession(config, app_id) as session:
        doc = await Global(session).open_doc(app_id)
        app_layout = await doc.get_app_layout()
        log.info("Opened app \"%s\"", app_layout.get("qTitle", app_id))
        if clear:
            await doc.clear_all()
        for field_name, values in selections.items():
            field = await doc.get_field(field_name)
            if not await field.select_values(values):
                log.warning("Selection of %s in field %s was not applied", values, field_name)
        obj = await doc.get_object(object_id)
        table = await fetch_table(obj, page_height, max_rows)

    if table is None:
        return None
    text = await save_table(table, output)
    log.info("Data preview: %s...", text[:200])
    return table


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    config = config_from_args(args)
    log.info("Starting Python %s", sys.version.split()[0])

    try:
        if args.command == "engine-info":
            asyncio.run(run_engine_info(config, args.output))
        elif args.command == "docs":
            asyncio.run(run_doc_list(config, args.output))
        elif args.command == "healthcheck":
            health = get_engine_health(config)
            log.info("Engine health: %s", json.dumps(health))
        elif args.command == "hypercube":
            table = asyncio.run(run_hypercube(
                config, args.app_id, args.object_id,
                group_selections(args.select), clear=args.clear,
                page_height=args.page_height, max_rows=args.max_rows,
                output=args.output))
            if table is None:
                return 1
    except EngineError as e:
        log.error("%s", e)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
