from __future__ import annotations

import contextlib
import logging
import socket
import threading
from http.server import HTTPServer
from pathlib import Path

from . import db
from .identity import IdentityVerifier
from .sync_api import build_sync_handler

logger = logging.getLogger(__name__)


def make_server(
    host: str,
    port: int,
    *,
    db_path: Path | None = None,
    verifier: IdentityVerifier | None = None,
) -> HTTPServer:
    resolved_db = Path(db_path or db.DEFAULT_DB_PATH)
    conn = db.connect(resolved_db)
    try:
        db.initialize_schema(conn)
    finally:
        conn.close()
    handler = build_sync_handler(resolved_db, verifier=verifier)

    class Server(HTTPServer):
        address_family = socket.AF_INET6 if ":" in host else socket.AF_INET

        def server_bind(self) -> None:
            if self.address_family == socket.AF_INET6:
                with contextlib.suppress(OSError):
                    self.socket.setsockopt(socket.IPPROTO_IPV6, socket.IPV6_V6ONLY, 0)
            super().server_bind()

    return Server((host, port), handler)


def run_server(
    host: str,
    port: int,
    *,
    db_path: Path | None = None,
    verifier: IdentityVerifier | None = None,
    stop_event: threading.Event | None = None,
) -> None:
    server = make_server(host, port, db_path=db_path, verifier=verifier)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    bound_host, bound_port = server.server_address[:2]
    logger.info("sync server listening on %s:%s", bound_host, bound_port)
    stop = stop_event or threading.Event()
    try:
        stop.wait()
    finally:
        server.shutdown()
        server.server_close()
        logger.info("sync server stopped")
