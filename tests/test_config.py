import json

import pytest

from revhub.model.Core.errors import ConfigurationConflict
from revhub.model.Core.header import Upstream
from revhub.model.ProxyConfig import (
    ProxyConfig,
    config_from_dict,
    load_config,
    load_rule_set,
    rule_from_dict,
    save_config,
)

DEV_SERVER_CONFIG = [
    {
        "context": ["/api"],
        "target": "http://localhost:8081",
        "secure": False,
        "changeOrigin": True,
        "logLevel": "debug",
    }
]


@pytest.fixture
def config_file(tmp_path):
    def write(data):
        path = tmp_path / "proxy.conf.json"
        path.write_text(json.dumps(data) if not isinstance(data, str) else data, encoding="utf-8")
        return path

    return write


def test_dev_server_format(config_file):
    config = load_config(config_file(DEV_SERVER_CONFIG), env={})

    (rule,) = config.rule_set
    assert rule.path_prefixes == ("/api",)
    assert rule.upstream == Upstream("http", "localhost", 8081)
    assert rule.rewrite_origin
    assert rule.allow_insecure_tls
    assert rule.verbose_logging
    assert not rule.strip_prefix
    assert config.listen_address == ("127.0.0.1", 8888)
    assert config.default_upstream is None
    assert config.source.name == "proxy.conf.json"


def test_descriptive_object_format(config_file):
    config = load_config(config_file({
        "listenHost": "0.0.0.0",
        "listenPort": 4200,
        "defaultUpstream": "http://localhost:4300",
        "exchangeTimeout": 10,
        "maxIdlePerAuthority": 2,
        "adminPort": 9000,
        "logLevel": "debug",
        "rules": [
            {"pathPrefixes": ["/api", "/auth"], "upstream": {"host": "backend", "port": 8081}, "stripPrefix": True},
            {"pathPrefixes": "/files", "upstream": "https://files.internal"},
        ],
    }), env={})

    assert config.listen_address == ("0.0.0.0", 4200)
    assert config.default_upstream == Upstream("http", "localhost", 4300)
    assert config.exchange_timeout == 10.0
    assert config.max_idle_per_authority == 2
    assert config.admin_port == 9000
    assert config.log_level == "DEBUG"
    first, second = config.rule_set
    assert first.path_prefixes == ("/api", "/auth")
    assert first.strip_prefix and not first.rewrite_origin
    assert second.upstream == Upstream("https", "files.internal", 443)
    assert not second.allow_insecure_tls


def test_environment_overrides_file(config_file):
    env = {
        "REVHUB_LISTEN_HOST": "0.0.0.0",
        "REVHUB_LISTEN_PORT": "4201",
        "REVHUB_DEFAULT_UPSTREAM": "http://localhost:4300",
        "REVHUB_LOG_LEVEL": "warning",
    }
    config = load_config(config_file({"listenPort": 4200, "rules": DEV_SERVER_CONFIG}), env=env)
    assert config.listen_address == ("0.0.0.0", 4201)
    assert config.default_upstream == Upstream("http", "localhost", 4300)
    assert config.log_level == "WARNING"


def test_invalid_env_port():
    with pytest.raises(ConfigurationConflict, match="LISTEN_PORT"):
        config_from_dict([], env={"REVHUB_LISTEN_PORT": "http"})


def test_duplicate_prefix_is_conflict(config_file):
    path = config_file([
        {"context": ["/api"], "target": "http://localhost:8081"},
        {"context": ["/api/"], "target": "http://localhost:8082"},
    ])
    with pytest.raises(ConfigurationConflict, match="/api"):
        load_config(path, env={})


@pytest.mark.parametrize("entry,message", [
    ({"target": "http://localhost:8081"}, "rule #0: missing"),
    ({"context": ["/api"]}, "rule #0: missing"),
    ({"context": [1], "target": "http://localhost:8081"}, "list of strings"),
    ({"context": ["api"], "target": "http://localhost:8081"}, "rule #0"),
    ({"context": ["/api"], "target": "gopher://x"}, "scheme"),
    ({"context": ["/api"], "target": {"port": 80}}, "host"),
    ("not an object", "expected an object"),
])
def test_invalid_rules(entry, message):
    with pytest.raises(ConfigurationConflict, match=message):
        rule_from_dict(entry)


def test_invalid_json_is_conflict(config_file):
    with pytest.raises(ConfigurationConflict, match="Invalid JSON"):
        load_config(config_file("[{"), env={})


def test_missing_file_is_conflict(tmp_path):
    with pytest.raises(ConfigurationConflict, match="Cannot read"):
        load_config(tmp_path / "nope.json", env={})


def test_invalid_setting_is_conflict():
    with pytest.raises(ConfigurationConflict, match="Invalid setting"):
        config_from_dict({"rules": [], "listenPort": "eighty"}, env={})


def test_config_must_be_list_or_object():
    with pytest.raises(ConfigurationConflict):
        config_from_dict("rules", env={})


def test_saved_config_loads_back(tmp_path, config_file):
    original = load_config(config_file(DEV_SERVER_CONFIG), env={})
    original.default_upstream = Upstream("http", "localhost", 4300)
    saved = tmp_path / "saved.json"
    save_config(original, saved)

    reloaded = load_config(saved, env={})
    assert list(reloaded.rule_set) == list(original.rule_set)
    assert reloaded.default_upstream == original.default_upstream


def test_load_rule_set_ignores_environment(config_file, monkeypatch):
    monkeypatch.setenv("REVHUB_LISTEN_PORT", "not-a-port")
    rule_set = load_rule_set(config_file(DEV_SERVER_CONFIG))
    assert [prefix for prefix, _ in rule_set.prefixes()] == ["/api"]


def test_defaults():
    config = ProxyConfig()
    assert len(config.rule_set) == 0
    assert (config.connect_timeout, config.exchange_timeout, config.idle_timeout) == (5.0, 60.0, 30.0)
    assert config.max_connections == 1000
