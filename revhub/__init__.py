"""
RevHub - path-prefix reverse proxy for local development servers.
"""

__version__ = "1.0.0"

from .model.Core.errors import (
    ConfigurationConflict,
    InternalError,
    MalformedRequest,
    ProxyError,
    UpstreamTimeout,
    UpstreamUnreachable,
)
from .model.Core.header import ForwardingRule, Upstream
from .model.Core.RoutingEngine import RoutingEngine, RuleSet
from .model.ProxyConfig import ProxyConfig, load_config
from .model.ReverseProxyServer import ReverseProxyServer

__all__ = [
    "ConfigurationConflict",
    "ForwardingRule",
    "InternalError",
    "MalformedRequest",
    "ProxyConfig",
    "ProxyError",
    "ReverseProxyServer",
    "RoutingEngine",
    "RuleSet",
    "Upstream",
    "UpstreamTimeout",
    "UpstreamUnreachable",
    "load_config",
    "__version__",
]
