"""
RevHub command line.

    revhub -c proxy.conf.json --default-upstream http://localhost:4200
    revhub -r /api=http://localhost:8081 --change-origin --dashboard

Exit codes: 0 clean shutdown, 1 bind failure, 2 configuration error.
"""

import argparse
import logging
import os
import signal
import sys
import threading
import time
from typing import List, Optional

from rich.live import Live

from .model.AdminAPI import AdminServer, create_admin_app
from .model.Core.ConnectionPool import ConnectionPool
from .model.Core.errors import ConfigurationConflict
from .model.Core.header import ForwardingRule, Upstream
from .model.Core.RoutingEngine import RuleSet
from .model.Dashboard import build_dashboard
from .model.logging_setup import setup_logging
from .model.ProxyConfig import ProxyConfig, apply_env, load_config, load_rule_set
from .model.ReverseProxyServer import ReverseProxyServer

logger = logging.getLogger("revhub.cli")

EXIT_OK = 0
EXIT_BIND_FAILED = 1
EXIT_CONFIG_ERROR = 2


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="revhub", description="Path-prefix reverse proxy for local development")
    parser.add_argument("-c", "--config", help="JSON config file (list of rules or object with 'rules')")
    parser.add_argument("-r", "--rule", action="append", default=[], metavar="PREFIX=URL",
                        help="Forward PREFIX to URL; repeatable, e.g. /api=http://localhost:8081")
    parser.add_argument("--change-origin", action="store_true", help="Rewrite Host for --rule upstreams")
    parser.add_argument("--insecure", action="store_true", help="Skip TLS verification for --rule upstreams")
    parser.add_argument("-H", "--host", help="Bind address (default 127.0.0.1)")
    parser.add_argument("-p", "--port", type=int, help="Port to listen on (default 8888)")
    parser.add_argument("-d", "--default-upstream", metavar="URL", help="Where unmatched requests are passed through")
    parser.add_argument("--admin-port", type=int, help="Serve the admin API on 127.0.0.1:PORT")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--log-file", help="Also log to this rotating file")
    parser.add_argument("--dashboard", action="store_true", help="Show a live terminal dashboard")
    return parser.parse_args(argv)


def rules_from_args(values: List[str], change_origin: bool, insecure: bool) -> List[ForwardingRule]:
    rules = []
    for value in values:
        if "=" not in value:
            raise ConfigurationConflict(f"--rule expects PREFIX=URL, got {value!r}")
        prefix, url = value.split("=", 1)
        rules.append(ForwardingRule(
            path_prefixes=tuple(p for p in prefix.split(",") if p),
            upstream=Upstream.from_url(url),
            rewrite_origin=change_origin,
            allow_insecure_tls=insecure,
        ))
    return rules


def build_config(args: argparse.Namespace) -> ProxyConfig:
    """Config file first, then ``REVHUB_*`` environment, then command line flags."""
    if args.config:
        config = load_config(args.config)
    else:
        config = ProxyConfig()
        apply_env(config, os.environ)

    if args.rule:
        extra = rules_from_args(args.rule, args.change_origin, args.insecure)
        config.rule_set = RuleSet(list(config.rule_set) + extra)
    if args.host:
        config.listen_host = args.host
    if args.port is not None:
        config.listen_port = args.port
    if args.default_upstream:
        config.default_upstream = Upstream.from_url(args.default_upstream)
    if args.admin_port is not None:
        config.admin_port = args.admin_port
    if args.log_level:
        config.log_level = args.log_level.upper()
    if args.log_file:
        config.log_file = args.log_file
    return config


def build_server(config: ProxyConfig) -> ReverseProxyServer:
    pool = ConnectionPool(
        max_idle_per_authority=config.max_idle_per_authority,
        connect_timeout=config.connect_timeout,
        idle_timeout=config.idle_timeout,
    )
    return ReverseProxyServer(
        rule_set=config.rule_set,
        listen_address=config.listen_address,
        default_upstream=config.default_upstream,
        connection_pool=pool,
        exchange_timeout=config.exchange_timeout,
        max_connections=config.max_connections,
    )


def _reloader(config: ProxyConfig):
    if config.source is None:
        return None
    return lambda: load_rule_set(config.source)


def _install_signals(server: ReverseProxyServer, config: ProxyConfig):
    def shutdown(signum=None, frame=None):
        logger.warning("Shutting down server...")
        server.stop()

    def reload(signum=None, frame=None):
        reloader = _reloader(config)
        if reloader is None:
            logger.warning("SIGHUP ignored: proxy was not started from a config file")
            return
        try:
            server.reload(reloader())
        except ConfigurationConflict as e:
            logger.error(f"Reload rejected, keeping current rules: {e}")

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, reload)


def _run_with_dashboard(server: ReverseProxyServer) -> int:
    errors = []

    def run():
        try:
            server.serve()
        except OSError as e:
            errors.append(e)

    thread = threading.Thread(target=run, name="revhub-server", daemon=True)
    thread.start()
    while thread.is_alive() and not server.ready.is_set():
        time.sleep(0.05)
    if errors:
        logger.error(f"Failed to bind {server.listen_address[0]}:{server.listen_address[1]}: {errors[0]}")
        return EXIT_BIND_FAILED

    with Live(build_dashboard(server), refresh_per_second=1, screen=True) as live:
        while thread.is_alive():
            time.sleep(1)
            live.update(build_dashboard(server))
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level or "INFO", args.log_file, console=not args.dashboard)

    try:
        config = build_config(args)
    except ConfigurationConflict as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR
    setup_logging(config.log_level, config.log_file, console=not args.dashboard)

    server = build_server(config)
    _install_signals(server, config)

    admin = None
    if config.admin_port is not None:
        try:
            admin = AdminServer(create_admin_app(server, _reloader(config)), config.admin_port)
        except OSError as e:
            logger.error(f"Failed to bind admin API on port {config.admin_port}: {e}")
            return EXIT_BIND_FAILED
        admin.start()

    try:
        if args.dashboard:
            return _run_with_dashboard(server)
        try:
            server.serve()
        except OSError as e:
            logger.error(f"Failed to bind {config.listen_host}:{config.listen_port}: {e}")
            return EXIT_BIND_FAILED
        return EXIT_OK
    finally:
        if admin:
            admin.stop()
        logger.info("✅ Proxy stopped")


if __name__ == "__main__":
    sys.exit(main())
