"""
engine_health.py

HTTP health check against the engine's `/engine/healthcheck` endpoint,
authenticated with the same client certificate as the WebSocket session.

Copyright:
    (c) 2025 Nutanix Inc. All rights reserved.
"""

import logging
import os
from typing import Any, Dict

import requests
import urllib3
from urllib3.exceptions import InsecureRequestWarning

from engine_config import EngineConfig
from engine_errors import EngineConfigError, EngineConnectionError, EngineResponseError

# Suppress SSL warnings
urllib3.disable_warnings(InsecureRequestWarning)

log = logging.getLogger(__name__)

HEALTHCHECK_PATH = "/engine/healthcheck"


def get_engine_health(config: EngineConfig) -> Dict[str, Any]:
    """Contact the engine service over HTTPS and return its health report."""
    url = config.http_url(HEALTHCHECK_PATH)
    cert_path, key_path, ca_path = config.client_cert_paths()
    kwargs: Dict[str, Any] = {
        "headers": {"X-Qlik-User": config.user_header()},
        "timeout": config.connect_timeout,
    }
    if config.secure:
        for path in (cert_path, key_path):
            if not os.path.isfile(path):
                raise EngineConfigError(f"Certificate file not found: {path}")
        kwargs["cert"] = (cert_path, key_path)
        if config.verify_peer:
            kwargs["verify"] = ca_path if os.path.isfile(ca_path) else True
        else:
            kwargs["verify"] = False

    log.info("Contacting the QIX engine service at %s", url)
    try:
        response = requests.get(url, **kwargs)
        response.raise_for_status()
    except requests.RequestException as e:
        raise EngineConnectionError(f"Engine health check failed: {e}") from e

    try:
        return response.json()
    except ValueError as e:
        raise EngineResponseError(
            f"Engine health check returned invalid JSON: {response.text[:200]}") from e
