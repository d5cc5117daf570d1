import logging
import threading
from datetime import datetime
from typing import Callable, Optional

from flask import Flask, jsonify
from werkzeug.serving import make_server

from .Core.errors import ConfigurationConflict
from .Core.RoutingEngine import RuleSet
from .ReverseProxyServer import ReverseProxyServer

logger = logging.getLogger("revhub.admin")


def create_admin_app(server: ReverseProxyServer, reloader: Optional[Callable[[], RuleSet]] = None) -> Flask:
    """
    Build the admin Flask app for ``server``.

    Args:
        server: the running proxy
        reloader: returns a freshly loaded RuleSet; enables ``POST /reload``
    """
    app = Flask("revhub.admin")

    @app.route("/health")
    def health():
        return jsonify({
            "status": "healthy" if server.running else "stopped",
            "active_connections": server.stats.active_connections,
            "timestamp": datetime.now().isoformat(),
        })

    @app.route("/stats")
    def stats():
        snapshot = server.stats.snapshot()
        snapshot["pool"] = server.connection_pool.stats()
        return jsonify(snapshot)

    @app.route("/rules")
    def rules():
        return jsonify({
            "rules": server.rule_set.to_list(),
            "defaultUpstream": str(server.default_upstream) if server.default_upstream else None,
        })

    @app.route("/reload", methods=["POST"])
    def reload():
        if reloader is None:
            return jsonify({"error": "Proxy was not started from a config file"}), 400
        try:
            rule_set = reloader()
        except ConfigurationConflict as e:
            logger.error(f"Reload rejected, keeping current rules: {e}")
            return jsonify({"error": str(e)}), 409
        server.reload(rule_set)
        return jsonify({"status": "reloaded", "rules": len(rule_set)})

    return app


class AdminServer:
    """Serves the admin app on 127.0.0.1 in a daemon thread."""

    def __init__(self, app: Flask, port: int, host: str = "127.0.0.1"):
        self.host = host
        self.port = port
        self.httpd = make_server(host, port, app, threaded=True)
        self.thread: Optional[threading.Thread] = None

    def start(self):
        self.thread = threading.Thread(target=self.httpd.serve_forever, name="revhub-admin", daemon=True)
        self.thread.start()
        logger.info(f"🛠️  Admin API on {self.host}:{self.httpd.server_port}")

    def stop(self):
        self.httpd.shutdown()
        if self.thread:
            self.thread.join(timeout=5)
