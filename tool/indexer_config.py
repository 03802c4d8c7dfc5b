from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_CONFIG_FILE = "config.json"
EXAMPLE_CONFIG_FILE = "config.example.json"
ENV_PREFIX = "INDEXER_"


class ConfigError(ValueError):
    """Configuration is missing or invalid."""


@dataclass
class IndexerConfig:
    node_addr: str = "localhost"
    port: int = 8545
    ws_port: int = 8546
    use_websocket: bool = False
    provider_url: Optional[str] = None
    rpc_timeout: float = 30.0
    db: str = "explorer.db"
    quiet: bool = False
    decimals: int = 18
    genesis_address: Optional[str] = None
    floor_block: int = 0
    window_blocks: int = 500
    batch_threshold: int = 100
    chunk_size: int = 100
    bulk_size: int = 300
    cache_max: int = 10000
    cache_reduce: float = 0.6
    scan_delay: float = 0.3
    poll_interval: float = 60.0
    retry_delay: float = 5.0

    def node_url(self) -> str:
        """Return the node endpoint, WebSocket when enabled."""
        if self.provider_url:
            return self.provider_url
        if self.use_websocket:
            return f"ws://{self.node_addr}:{self.ws_port}"
        return f"http://{self.node_addr}:{self.port}"


# (path in config.json, field name)
_FILE_KEYS = [
    (("nodeAddr",), "node_addr"),
    (("port",), "port"),
    (("wsPort",), "ws_port"),
    (("webSocketEnabled",), "use_websocket"),
    (("web3Provider", "url"), "provider_url"),
    (("database", "uri"), "db"),
    (("quiet",), "quiet"),
    (("bulkSize",), "bulk_size"),
    (("startBlock",), "floor_block"),
    (("retryDelay",), "retry_delay"),
    (("currency", "decimals"), "decimals"),
    (("settings", "genesisAddress"), "genesis_address"),
    (("richlist", "windowBlocks"), "window_blocks"),
    (("richlist", "batchThreshold"), "batch_threshold"),
    (("richlist", "chunkSize"), "chunk_size"),
    (("richlist", "cacheMax"), "cache_max"),
    (("richlist", "cacheReduce"), "cache_reduce"),
    (("richlist", "scanDelay"), "scan_delay"),
    (("richlist", "pollInterval"), "poll_interval"),
    (("richlist", "rpcTimeout"), "rpc_timeout"),
]


def _lookup(data: Dict[str, Any], path) -> Any:
    cur: Any = data
    for key in path:
        if not isinstance(cur, dict) or key not in cur:
            return None
        cur = cur[key]
    return cur


def _convert(name: str, value: Any, kind: str) -> Any:
    if value is None:
        return None
    try:
        if kind == "bool":
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true", "yes", "on")
            return bool(value)
        if kind == "int":
            return int(value)
        if kind == "float":
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid value for {name}: {value!r}") from exc
    return str(value)


def _db_path(uri: str) -> str:
    for prefix in ("sqlite:///", "sqlite://"):
        if uri.startswith(prefix):
            return uri[len(prefix):]
    return uri


def load_config(
    path: str | Path = DEFAULT_CONFIG_FILE,
    environ: Optional[Dict[str, str]] = None,
) -> IndexerConfig:
    """Read *path* (or ``config.example.json`` beside it) and apply env overrides.

    Every field can be overridden with ``INDEXER_<FIELD>``, e.g.
    ``INDEXER_NODE_ADDR`` or ``INDEXER_QUIET=1``.
    """
    path = Path(path)
    example = path.with_name(EXAMPLE_CONFIG_FILE)
    if path.exists():
        source = path
    elif example.exists():
        source = example
    else:
        raise ConfigError(f"Neither {path} nor {example} found")
    try:
        data = json.loads(source.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"cannot read {source}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{source} must contain a JSON object")

    types = {f.name: f.type for f in fields(IndexerConfig)}
    values: Dict[str, Any] = {}
    for key_path, name in _FILE_KEYS:
        raw = _lookup(data, key_path)
        if raw is not None:
            values[name] = _convert(name, raw, _base_type(types[name]))

    env = os.environ if environ is None else environ
    for name, kind in types.items():
        raw = env.get(ENV_PREFIX + name.upper())
        if raw is not None and raw != "":
            values[name] = _convert(name, raw, _base_type(kind))

    cfg = IndexerConfig(**values)
    cfg.db = _db_path(cfg.db)
    if not cfg.node_addr and not cfg.provider_url:
        raise ConfigError("no node address configured")
    if cfg.window_blocks <= 0 or cfg.chunk_size <= 0 or cfg.bulk_size <= 0:
        raise ConfigError("window, chunk and bulk sizes must be positive")
    if not 0 < cfg.cache_reduce <= 1:
        raise ConfigError("cache reduce factor must be in (0, 1]")
    return cfg


def _base_type(annotation: Any) -> str:
    # Annotations are strings under ``from __future__ import annotations``.
    text = str(annotation)
    for kind in ("bool", "int", "float"):
        if text == kind:
            return kind
    return "str"
