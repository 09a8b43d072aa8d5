# lazystatus.py - small HTTP status surface for a running LazyFS mount
#
#   GET /healthz  -> {"ok": true, ...}
#   GET /status   -> config, cumulative counters, last materialization report
#   GET /check    -> dry-run consistency of every (replica, name) pair

import time
import socket
import logging
import threading
from typing import Optional

from flask import Flask, jsonify

from lazymat import Materializer

log = logging.getLogger("lazyfs.status")

STATUS_BIND_HOST = "127.0.0.1"


def create_app(materializer: Materializer) -> Flask:
    app = Flask("lazyfs")
    app.json.sort_keys = False
    started = time.time()

    @app.route("/healthz", methods=["GET"])
    def healthz():
        return jsonify({"ok": True, "filename": materializer.config.filename})

    @app.route("/status", methods=["GET"])
    def status():
        report = materializer.last_report
        return jsonify({
            "server": socket.gethostname(),
            "ts": time.time(),
            "uptime": time.time() - started,
            "config": materializer.config.as_dict(),
            "stats": dict(materializer.stats),
            "last_report": report.as_dict() if report else None,
        })

    @app.route("/check", methods=["GET"])
    def check():
        try:
            results = materializer.inspect()
        except ValueError as e:
            return jsonify({"error": str(e)}), 500
        return jsonify({"ts": time.time(), "results": [r.as_dict() for r in results]})

    return app


class StatusServer:
    """werkzeug server running the status app on a daemon thread."""

    def __init__(self, httpd, thread: threading.Thread):
        self._httpd = httpd
        self._thread = thread

    @property
    def port(self) -> int:
        return self._httpd.server_port

    def shutdown(self) -> None:
        self._httpd.shutdown()
        self._thread.join(timeout=2.0)


def start_status_server(materializer: Materializer, port: int,
                        host: Optional[str] = None) -> StatusServer:
    """Bind now (port 0 picks a free one) and serve in the background."""
    from werkzeug.serving import make_server
    host = host or STATUS_BIND_HOST
    httpd = make_server(host, port, create_app(materializer), threaded=True)
    t = threading.Thread(target=httpd.serve_forever, name="lazyfs-status", daemon=True)
    t.start()
    log.info("status server listening on %s:%d", host, httpd.server_port)
    return StatusServer(httpd, t)
