"""
Wiki configuration - JSON file deep-merged over defaults.

Sections:
    wikidb:  store engine and Page Service address
    http:    API gateway listener and instance count
    bridge:  WebSocket bridge path and allow-lists
    logging: wikisdk.logging settings

Configuration is read once at composition time and never renegotiated.
"""

import copy
import orjson
from pathlib import Path
from typing import Any, Dict, Optional


# Config keys
CONFIG_WIKIDB = 'wikidb'
CONFIG_HTTP = 'http'
CONFIG_BRIDGE = 'bridge'
CONFIG_LOGGING = 'logging'

DEFAULT_WIKIDB_QUEUE = 'wikidb.queue'
MARKDOWN_ADDRESS = 'app.markdown'
PAGE_SAVED_ADDRESS = 'page.saved'

DEFAULT_CONFIG: Dict[str, Any] = {
    CONFIG_WIKIDB: {
        'url': 'sqlite:///db/wiki.db',
        'maxPoolSize': 30,
        'acquireTimeout': 30.0,
        'sqlQueriesFile': None,
        'queue': DEFAULT_WIKIDB_QUEUE
    },
    CONFIG_HTTP: {
        'host': '0.0.0.0',
        'port': 8080,
        'instances': 2,
        'requestTimeout': 30.0
    },
    CONFIG_BRIDGE: {
        'path': '/eventbus',
        'inbound': [MARKDOWN_ADDRESS],
        'outbound': [PAGE_SAVED_ADDRESS],
        'replyTimeout': 30.0
    },
    CONFIG_LOGGING: {
        'logDir': 'logs',
        'level': 'INFO',
        'console': True
    }
}


class ConfigError(Exception):
    """Invalid or unreadable configuration"""
    pass


def _deepMerge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deepMerge(merged[key], value)
        else:
            merged[key] = value
    return merged


def buildConfig(overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Defaults merged with overrides, validated"""
    config = _deepMerge(DEFAULT_CONFIG, overrides or {})
    validateConfig(config)
    return config


def loadConfig(configPath: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from JSON file (defaults only when configPath is None)"""
    if configPath is None:
        return buildConfig()

    path = Path(configPath)
    try:
        raw = orjson.loads(path.read_bytes())
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {configPath}") from None
    except orjson.JSONDecodeError as e:
        raise ConfigError(f"Config file is not valid JSON: {configPath}: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file must hold a JSON object: {configPath}")
    return buildConfig(raw)


def _positiveInt(section: Dict[str, Any], key: str, sectionName: str):
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{sectionName}.{key} must be a positive integer, got {value!r}")


def _positiveNumber(section: Dict[str, Any], key: str, sectionName: str):
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(f"{sectionName}.{key} must be a positive number, got {value!r}")


def validateConfig(config: Dict[str, Any]):
    for sectionName in (CONFIG_WIKIDB, CONFIG_HTTP, CONFIG_BRIDGE, CONFIG_LOGGING):
        if not isinstance(config.get(sectionName), dict):
            raise ConfigError(f"{sectionName} must be an object")

    wikidb = config[CONFIG_WIKIDB]
    _positiveInt(wikidb, 'maxPoolSize', CONFIG_WIKIDB)
    _positiveNumber(wikidb, 'acquireTimeout', CONFIG_WIKIDB)
    if not isinstance(wikidb.get('url'), str) or not wikidb['url']:
        raise ConfigError("wikidb.url must be a non-empty string")
    if not isinstance(wikidb.get('queue'), str) or not wikidb['queue']:
        raise ConfigError("wikidb.queue must be a non-empty string")

    http = config[CONFIG_HTTP]
    _positiveInt(http, 'instances', CONFIG_HTTP)
    _positiveNumber(http, 'requestTimeout', CONFIG_HTTP)
    port = http.get('port')
    if isinstance(port, bool) or not isinstance(port, int) or not 0 <= port <= 65535:
        raise ConfigError(f"http.port must be an integer in 0..65535, got {port!r}")
    # Ephemeral ports are per listener; instances could not share one
    if port == 0 and http['instances'] > 1:
        raise ConfigError("http.port 0 requires http.instances == 1")

    bridge = config[CONFIG_BRIDGE]
    _positiveNumber(bridge, 'replyTimeout', CONFIG_BRIDGE)
    for direction in ('inbound', 'outbound'):
        addresses = bridge.get(direction)
        if not isinstance(addresses, list) or not all(isinstance(a, str) and a for a in addresses):
            raise ConfigError(f"bridge.{direction} must be a list of non-empty address strings")
    if not isinstance(bridge.get('path'), str) or not bridge['path'].startswith('/'):
        raise ConfigError("bridge.path must start with '/'")
