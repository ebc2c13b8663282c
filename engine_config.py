"""
engine_config.py

Connection settings for the Qlik Sense engine (QIX) and the client TLS
context built from them.

The engine listens on port 4747 and authenticates service users by client
certificate. The certificate directory is expected to hold the files
exported from the Qlik Management Console:

    client.pem      client certificate
    client_key.pem  client private key
    root.pem        root CA of the engine certificate

The user the requests run as is sent in the `X-Qlik-User` header during the
WebSocket upgrade.

Copyright:
    (c) 2025 Nutanix Inc. All rights reserved.
"""

import logging
import os
import ssl
from dataclasses import dataclass
from typing import Optional, Tuple
from urllib.parse import quote

from engine_errors import EngineConfigError

log = logging.getLogger(__name__)

DEFAULT_PORT = 4747
CLIENT_CERT_FILE = "client.pem"
CLIENT_KEY_FILE = "client_key.pem"
ROOT_CERT_FILE = "root.pem"
MAX_MESSAGE_SIZE = 1024 * 1024


@dataclass
class EngineConfig:
    host: str = "localhost"
    port: int = DEFAULT_PORT
    secure: bool = True
    cert_dir: str = "certs"
    verify_peer: bool = False
    user_directory: str = "internal"
    user_id: str = "sa_engine"
    identity: Optional[str] = None
    connect_timeout: float = 30.0
    request_timeout: float = 10.0
    max_message_size: int = MAX_MESSAGE_SIZE

    def app_path(self, app_id: Optional[str] = None) -> str:
        """
        Build the engine endpoint path for an app.

        Connecting to `/app/` gives a session without a document, which is
        enough for Global calls such as EngineVersion or GetDocList. An
        identity suffix lets several connections to the same app share one
        engine session; it is ignored without an app.
        """
        path = "/app/"
        if app_id:
            path += quote(app_id, safe="")
            if self.identity:
                path += "/identity/" + quote(self.identity, safe="")
        return path

    def url(self, app_id: Optional[str] = None) -> str:
        scheme = "wss" if self.secure else "ws"
        return f"{scheme}://{self.host}:{self.port}{self.app_path(app_id)}"

    def http_url(self, path: str) -> str:
        scheme = "https" if self.secure else "http"
        return f"{scheme}://{self.host}:{self.port}{path}"

    def user_header(self) -> str:
        return f"UserDirectory={self.user_directory}; UserId={self.user_id}"

    def client_cert_paths(self) -> Tuple[str, str, str]:
        return (
            os.path.join(self.cert_dir, CLIENT_CERT_FILE),
            os.path.join(self.cert_dir, CLIENT_KEY_FILE),
            os.path.join(self.cert_dir, ROOT_CERT_FILE),
        )


def create_ssl_context(config: EngineConfig) -> ssl.SSLContext:
    """
    Create the client-side SSL context used to reach the engine.

    Args:
        config (EngineConfig): Connection settings.

    Returns:
        ssl.SSLContext: Context presenting the client certificate. Peer and
        hostname verification are disabled unless `verify_peer` is set,
        since engines commonly run with self-signed certificates.

    Raises:
        EngineConfigError: If the client certificate or key is missing or
        cannot be loaded.
    """
    cert_path, key_path, ca_path = config.client_cert_paths()
    for path in (cert_path, key_path):
        if not os.path.isfile(path):
            raise EngineConfigError(f"Certificate file not found: {path}")

    log.info("Configuring SSL with cert: %s and key: %s", cert_path, key_path)
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    try:
        context.load_cert_chain(certfile=cert_path, keyfile=key_path)
    except (ssl.SSLError, OSError) as e:
        raise EngineConfigError(f"Unable to load client certificate: {e}") from e

    if config.verify_peer:
        if os.path.isfile(ca_path):
            context.load_verify_locations(cafile=ca_path)
        else:
            log.warning("Root certificate %s not found, using system CAs", ca_path)
    else:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context
