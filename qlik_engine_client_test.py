"""
Tests for the qlik_engine_client command line entry point.

Tests included:
- `test_parse_args_*`: argument parsing per sub-command, defaults and
    required options, rejected counts.
- `test_positive_int`: page height and row limits must be at least 1.
- `test_parse_selection*` / `test_group_selections`: FIELD=VALUE handling.
- `test_main_*`: exit codes of `main` with the runners patched.
- `TestCommands`: the engine-info, docs and hypercube runners end to end
    against the fake engine.

Copyright:
    (c) 2025 Nutanix Inc. All rights reserved.
"""

import argparse
import json
import logging
import os
import tempfile
from unittest.mock import AsyncMock

import pytest
from aiohttp.test_utils import AioHTTPTestCase

from engine_config import EngineConfig
from engine_errors import EngineConnectionError, EngineRpcError
from fake_engine import APP_ID, FakeEngine
from qlik_engine_client import (config_from_args, group_selections, main,
                                parse_args, parse_selection, positive_int,
                                run_doc_list,
                                run_engine_info, run_hypercube)

# Configure logging
logging.basicConfig(level=logging.DEBUG)
logger = logging.getLogger(__name__)


def test_parse_args_hypercube():
    """
    Test the hypercube sub-command: required ids, repeated selections and
    the defaults of the shared options.
    """
    logger.debug("Starting test_parse_args_hypercube")
    args = parse_args([
        "hypercube", "--app_id", APP_ID, "--object_id", "UQWGWCF",
        "--select", "Country=Sweden", "--select", "Year=2020",
    ])
    assert args.command == "hypercube"
    assert args.app_id == APP_ID
    assert args.object_id == "UQWGWCF"
    assert args.select == [("Country", "Sweden"), ("Year", 2020)]
    assert args.output == "hypercube_data.json"
    assert args.page_height == 100
    assert args.host == "localhost"
    assert args.port == 4747
    assert args.cert_dir == "certs"
    logger.debug("Finished test_parse_args_hypercube")


def test_parse_args_engine_info():
    args = parse_args(["engine-info", "--host", "qlik.local", "--user_id", "svc"])
    assert args.output == "GetEngineInfo.txt"
    config = config_from_args(args)
    assert config.host == "qlik.local"
    assert config.user_id == "svc"
    assert config.secure is True
    assert config.request_timeout == 10.0


def test_parse_args_missing_required():
    """
    Test that the hypercube sub-command refuses to run without an object id.
    """
    with pytest.raises(SystemExit):
        parse_args(["hypercube", "--app_id", APP_ID])


def test_parse_args_missing_command():
    with pytest.raises(SystemExit):
        parse_args([])


def test_parse_args_rejects_non_positive_counts():
    """
    Test that a zero page height or a negative row limit is refused by the
    parser instead of producing an empty table.
    """
    logger.debug("Starting test_parse_args_rejects_non_positive_counts")
    base = ["hypercube", "--app_id", APP_ID, "--object_id", "UQWGWCF"]
    for extra in (["--page_height", "0"], ["--page_height", "-1"],
                  ["--max_rows", "-5"], ["--max_rows", "0"], ["--max_rows", "ten"]):
        with pytest.raises(SystemExit):
            parse_args(base + extra)
    args = parse_args(base + ["--page_height", "50", "--max_rows", "1"])
    assert args.page_height == 50
    assert args.max_rows == 1
    logger.debug("Finished test_parse_args_rejects_non_positive_counts")


def test_positive_int():
    assert positive_int("3") == 3
    with pytest.raises(argparse.ArgumentTypeError):
        positive_int("0")
    with pytest.raises(argparse.ArgumentTypeError):
        positive_int("1.5")


def test_parse_selection():
    assert parse_selection("Country=Sweden") == ("Country", "Sweden")
    assert parse_selection("Year=2020") == ("Year", 2020)
    assert parse_selection("Rate=0.5") == ("Rate", 0.5)
    assert parse_selection("Expr=a=b") == ("Expr", "a=b")


def test_parse_selection_invalid():
    with pytest.raises(argparse.ArgumentTypeError):
        parse_selection("Country")
    with pytest.raises(argparse.ArgumentTypeError):
        parse_selection("=Sweden")


def test_group_selections():
    grouped = group_selections([("Country", "Sweden"), ("Year", 2020), ("Country", "Norway")])
    assert grouped == {"Country": ["Sweden", "Norway"], "Year": [2020]}


def test_main_hypercube(monkeypatch):
    """
    Test that main passes the parsed options to the hypercube runner and
    returns 0 when a table was saved.
    """
    logger.debug("Starting test_main_hypercube")
    runner = AsyncMock(return_value={"headers": [], "data": []})
    monkeypatch.setattr("qlik_engine_client.run_hypercube", runner)
    result = main(["hypercube", "--app_id", APP_ID, "--object_id", "CHART",
                   "--select", "Country=Sweden", "--clear"])
    assert result == 0
    args, kwargs = runner.call_args
    assert args[1:] == (APP_ID, "CHART", {"Country": ["Sweden"]})
    assert kwargs["clear"] is True
    logger.debug("Finished test_main_hypercube")


def test_main_no_hypercube(monkeypatch):
    monkeypatch.setattr("qlik_engine_client.run_hypercube", AsyncMock(return_value=None))
    assert main(["hypercube", "--app_id", APP_ID, "--object_id", "TEXT"]) == 1


def test_main_engine_error(monkeypatch):
    """
    Test that an EngineError from a runner is logged and turned into exit
    code 1.
    """
    monkeypatch.setattr("qlik_engine_client.run_engine_info",
                        AsyncMock(side_effect=EngineConnectionError("refused")))
    assert main(["engine-info"]) == 1


def test_main_healthcheck(monkeypatch):
    monkeypatch.setattr("qlik_engine_client.get_engine_health",
                        lambda config: {"version": "12.1306.0"})
    assert main(["healthcheck", "--debug"]) == 0


class TestCommands(AioHTTPTestCase):
    """
    Runs the sub-command coroutines against FakeEngine and checks the files
    they write.
    """

    async def get_application(self):
        self.fake = FakeEngine()
        return self.fake.app()

    def engine_config(self):
        return EngineConfig(host=self.server.host, port=self.server.port,
                            secure=False, request_timeout=2.0)

    async def test_run_hypercube(self):
        """
        Test the full extraction: OpenDoc, GetAppLayout, selections, GetObject,
        GetLayout and three GetHyperCubeData pages on one session, then the JSON file.
        """
        logger.debug("Starting test_run_hypercube")
        with tempfile.TemporaryDirectory() as tmp:
            output = os.path.join(tmp, "hypercube_data.json")
            table = await run_hypercube(
                self.engine_config(), APP_ID, "CHART",
                {"Country": ["Country 1", "Country 2"], "Year": [2020]},
                clear=True, output=output)
            with open(output) as f:
                saved = json.load(f)

        assert saved == table
        assert table["headers"] == ["Country", "Sales"]
        assert len(table["data"]) == 250
        assert table["data"][2] == ["Country 2", 3.0]
        assert self.fake.cleared
        assert self.fake.selections == {
            "Country": [{"qText": "Country 1"}, {"qText": "Country 2"}],
            "Year": [{"qIsNumeric": True, "qNumber": 2020}],
        }
        assert self.fake.paths == [f"/app/{APP_ID}"]
        methods = [r["method"] for r in self.fake.requests]
        assert methods == ["OpenDoc", "GetAppLayout", "ClearAll", "GetField", "SelectValues",
                           "GetField", "SelectValues", "GetObject", "GetLayout",
                           "GetHyperCubeData", "GetHyperCubeData", "GetHyperCubeData"]
        assert [r["id"] for r in self.fake.requests] == list(range(1, 13))
        logger.debug("Finished test_run_hypercube")

    async def test_run_hypercube_without_cube(self):
        with tempfile.TemporaryDirectory() as tmp:
            output = os.path.join(tmp, "hypercube_data.json")
            table = await run_hypercube(self.engine_config(), APP_ID, "TEXT", {}, output=output)
            assert table is None
            assert not os.path.exists(output)

    async def test_run_hypercube_unknown_app(self):
        with pytest.raises(EngineRpcError, match="App not found"):
            await run_hypercube(self.engine_config(), "no-such-app", "CHART", {})

    async def test_run_engine_info(self):
        """
        Test that engine-info records the OnConnected session state and the
        engine version in the output file.
        """
        logger.debug("Starting test_run_engine_info")
        with tempfile.TemporaryDirectory() as tmp:
            output = os.path.join(tmp, "GetEngineInfo.txt")
            info = await run_engine_info(self.engine_config(), output)
            with open(output) as f:
                saved = json.load(f)
        assert saved == info
        assert info["qSessionState"] == "SESSION_CREATED"
        assert info["qVersion"]["qComponentVersion"] == "12.1306.0"
        assert self.fake.paths == ["/app/"]
        logger.debug("Finished test_run_engine_info")

    async def test_run_doc_list(self):
        with tempfile.TemporaryDirectory() as tmp:
            output = os.path.join(tmp, "docs.json")
            docs = await run_doc_list(self.engine_config(), output)
            with open(output) as f:
                assert json.load(f) == docs
        assert docs == [{"qDocName": "Sales.qvf", "qDocId": APP_ID}]
