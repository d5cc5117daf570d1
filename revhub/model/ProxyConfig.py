import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from .Core.errors import ConfigurationConflict
from .Core.header import ForwardingRule, Upstream
from .Core.RoutingEngine import RuleSet

logger = logging.getLogger("revhub.config")

ENV_PREFIX = "REVHUB_"

# Both the dev-server spelling (context/target/changeOrigin/secure/logLevel)
# and the descriptive spelling are accepted.
PREFIX_KEYS = ("pathPrefixes", "context")
UPSTREAM_KEYS = ("upstream", "target")


@dataclass
class ProxyConfig:
    """
    Settings for one proxy process.

    Attributes:
        rule_set: validated forwarding rules
        default_upstream: where unmatched requests go (None answers 404)
        source: file the config was loaded from, used by reload
    """

    rule_set: RuleSet = field(default_factory=RuleSet)
    listen_host: str = "127.0.0.1"
    listen_port: int = 8888
    default_upstream: Optional[Upstream] = None
    connect_timeout: float = 5.0
    exchange_timeout: float = 60.0
    idle_timeout: float = 30.0
    max_idle_per_authority: int = 8
    max_connections: int = 1000
    admin_port: Optional[int] = None
    log_level: str = "INFO"
    log_file: Optional[str] = None
    source: Optional[Path] = None

    @property
    def listen_address(self):
        return (self.listen_host, self.listen_port)


def _first(data: Mapping[str, Any], keys, default=None):
    for key in keys:
        if key in data:
            return data[key]
    return default


def parse_upstream(value: Union[str, Mapping[str, Any]], where: str = "upstream") -> Upstream:
    if isinstance(value, str):
        return Upstream.from_url(value)
    if isinstance(value, Mapping):
        scheme = str(value.get("scheme", "http")).lower()
        host = value.get("host")
        if not host:
            raise ConfigurationConflict(f"{where}: upstream object needs a 'host'")
        port = value.get("port")
        url = f"{scheme}://{host}" + (f":{port}" if port is not None else "")
        return Upstream.from_url(url)
    raise ConfigurationConflict(f"{where}: upstream must be a URL string or an object, got {type(value).__name__}")


def rule_from_dict(data: Mapping[str, Any], index: int = 0) -> ForwardingRule:
    """
    Build a ForwardingRule from one config entry.

    Example (dev-server spelling)::

        {"context": ["/api"], "target": "http://localhost:8081",
         "secure": false, "changeOrigin": true, "logLevel": "debug"}

    Raises:
        ConfigurationConflict: the entry is missing fields or malformed
    """
    where = f"rule #{index}"
    if not isinstance(data, Mapping):
        raise ConfigurationConflict(f"{where}: expected an object, got {type(data).__name__}")

    prefixes = _first(data, PREFIX_KEYS)
    if prefixes is None:
        raise ConfigurationConflict(f"{where}: missing 'pathPrefixes' (or 'context')")
    if isinstance(prefixes, str):
        prefixes = [prefixes]
    if not isinstance(prefixes, list) or not all(isinstance(p, str) for p in prefixes):
        raise ConfigurationConflict(f"{where}: path prefixes must be a list of strings")

    upstream_value = _first(data, UPSTREAM_KEYS)
    if upstream_value is None:
        raise ConfigurationConflict(f"{where}: missing 'upstream' (or 'target')")
    upstream = parse_upstream(upstream_value, where)

    rewrite_origin = bool(_first(data, ("rewriteOrigin", "changeOrigin"), False))
    if "allowInsecureTLS" in data:
        allow_insecure_tls = bool(data["allowInsecureTLS"])
    else:
        allow_insecure_tls = data.get("secure", True) is False
    if "verboseLogging" in data:
        verbose = bool(data["verboseLogging"])
    else:
        verbose = str(data.get("logLevel", "")).lower() == "debug"

    try:
        return ForwardingRule(
            path_prefixes=tuple(prefixes),
            upstream=upstream,
            rewrite_origin=rewrite_origin,
            allow_insecure_tls=allow_insecure_tls,
            verbose_logging=verbose,
            strip_prefix=bool(data.get("stripPrefix", False)),
        )
    except ConfigurationConflict as e:
        raise ConfigurationConflict(f"{where}: {e}")


def build_rule_set(entries: List[Mapping[str, Any]]) -> RuleSet:
    if not isinstance(entries, list):
        raise ConfigurationConflict(f"Rules must be a list, got {type(entries).__name__}")
    return RuleSet(rule_from_dict(entry, index) for index, entry in enumerate(entries))


def config_from_dict(data: Union[List[Any], Mapping[str, Any]], env: Optional[Mapping[str, str]] = None) -> ProxyConfig:
    """Build a ProxyConfig from parsed JSON plus ``REVHUB_*`` environment overrides."""
    if isinstance(data, list):
        data = {"rules": data}
    if not isinstance(data, Mapping):
        raise ConfigurationConflict("Config must be a list of rules or an object with 'rules'")

    config = ProxyConfig(rule_set=build_rule_set(data.get("rules", [])))
    try:
        config.listen_host = str(data.get("listenHost", config.listen_host))
        config.listen_port = int(data.get("listenPort", config.listen_port))
        config.connect_timeout = float(data.get("connectTimeout", config.connect_timeout))
        config.exchange_timeout = float(data.get("exchangeTimeout", config.exchange_timeout))
        config.idle_timeout = float(data.get("idleTimeout", config.idle_timeout))
        config.max_idle_per_authority = int(data.get("maxIdlePerAuthority", config.max_idle_per_authority))
        config.max_connections = int(data.get("maxConnections", config.max_connections))
        if data.get("adminPort") is not None:
            config.admin_port = int(data["adminPort"])
    except (TypeError, ValueError) as e:
        raise ConfigurationConflict(f"Invalid setting: {e}")
    config.log_level = str(data.get("logLevel", config.log_level)).upper()
    config.log_file = data.get("logFile", config.log_file)
    if data.get("defaultUpstream"):
        config.default_upstream = parse_upstream(data["defaultUpstream"], "defaultUpstream")

    apply_env(config, os.environ if env is None else env)
    return config


def apply_env(config: ProxyConfig, env: Mapping[str, str]):
    if env.get(f"{ENV_PREFIX}LISTEN_HOST"):
        config.listen_host = env[f"{ENV_PREFIX}LISTEN_HOST"]
    if env.get(f"{ENV_PREFIX}LISTEN_PORT"):
        try:
            config.listen_port = int(env[f"{ENV_PREFIX}LISTEN_PORT"])
        except ValueError:
            raise ConfigurationConflict(f"{ENV_PREFIX}LISTEN_PORT must be an integer")
    if env.get(f"{ENV_PREFIX}DEFAULT_UPSTREAM"):
        config.default_upstream = Upstream.from_url(env[f"{ENV_PREFIX}DEFAULT_UPSTREAM"])
    if env.get(f"{ENV_PREFIX}LOG_LEVEL"):
        config.log_level = env[f"{ENV_PREFIX}LOG_LEVEL"].upper()


def load_config(file_path: Union[str, Path], env: Optional[Mapping[str, str]] = None) -> ProxyConfig:
    """
    Load a proxy config from a JSON file.

    Args:
        file_path: JSON file holding a list of rules or an object with 'rules'
        env: environment used for overrides (defaults to os.environ)

    Returns:
        ProxyConfig with a validated RuleSet

    Raises:
        ConfigurationConflict: unreadable file, invalid JSON, or invalid rules
    """
    file_path = Path(file_path)
    try:
        with open(file_path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except OSError as e:
        raise ConfigurationConflict(f"Cannot read config {file_path}: {e}")
    except json.JSONDecodeError as e:
        raise ConfigurationConflict(f"Invalid JSON in {file_path}: {e}")

    config = config_from_dict(data, env)
    config.source = file_path
    logger.info(f"✅ Loaded {len(config.rule_set)} rules from {file_path}")
    return config


def load_rule_set(file_path: Union[str, Path]) -> RuleSet:
    """Re-read only the rules from ``file_path``; used for reloads."""
    return load_config(file_path, env={}).rule_set


def save_config(config: ProxyConfig, file_path: Union[str, Path]):
    data: Dict[str, Any] = {
        "listenHost": config.listen_host,
        "listenPort": config.listen_port,
        "rules": config.rule_set.to_list(),
    }
    if config.default_upstream:
        data["defaultUpstream"] = str(config.default_upstream)
    with open(file_path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=4)
