"""
Environment-selected configuration.

`SHRIMPL_ENV` (default "dev") picks `config/config.<env>.yaml` (or `.yml`,
`.json`) in the directory of the entry file. A missing file means defaults.
The file may override the server settings, set TLS material, adjust the
evaluator limits and provide fallback values for secrets:

    server:
      port: 8080
      tls: false
      host: 0.0.0.0
    tls:
      cert: certs/server.pem
      key: certs/server.key
    limits:
      max_repeat: 1000
      max_call_depth: 50
    secrets:
      SHRIMPL_OPENAI_API_KEY: sk-test
"""

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from shrimpl.shrimpl_datatypes import Program, ShrimplConfigError
from shrimpl.shrimpl_interpreter import DEFAULT_MAX_CALL_DEPTH, DEFAULT_MAX_REPEAT

DEFAULT_ENV = "dev"
DEFAULT_HOST = "127.0.0.1"
CONFIG_SUFFIXES = (".yaml", ".yml", ".json")


@dataclass
class ShrimplConfig:
    env: str = DEFAULT_ENV
    host: str = DEFAULT_HOST
    port: Optional[int] = None
    tls: Optional[bool] = None
    tls_cert: Optional[str] = None
    tls_key: Optional[str] = None
    max_repeat: int = DEFAULT_MAX_REPEAT
    max_call_depth: int = DEFAULT_MAX_CALL_DEPTH
    secrets: Dict[str, str] = field(default_factory=dict)
    source: Optional[Path] = None


def env_name(environ: Optional[Mapping[str, str]] = None) -> str:
    environ = os.environ if environ is None else environ
    return environ.get("SHRIMPL_ENV") or DEFAULT_ENV


def config_path(base_dir: str | Path, env: str) -> Optional[Path]:
    """Returns the first existing config file for `env` under base_dir/config."""
    folder = Path(base_dir) / "config"
    for suffix in CONFIG_SUFFIXES:
        candidate = folder / f"config.{env}{suffix}"
        if candidate.is_file():
            return candidate
    return None


def load_config(base_dir: str | Path = ".", env: Optional[str] = None,
                environ: Optional[Mapping[str, str]] = None) -> ShrimplConfig:
    env = env or env_name(environ)
    path = config_path(base_dir, env)
    if path is None:
        return ShrimplConfig(env=env)
    try:
        # JSON is a subset of YAML, so one loader covers every suffix.
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as e:
        raise ShrimplConfigError(f"Cannot read config {path}: {e}") from e
    config = config_from_mapping(data or {}, env=env)
    config.source = path
    return config


def config_from_mapping(data: Any, env: str = DEFAULT_ENV) -> ShrimplConfig:
    """Validates a decoded config document and builds a ShrimplConfig."""
    if not isinstance(data, Mapping):
        raise ShrimplConfigError("Config root must be a mapping")
    config = ShrimplConfig(env=env)

    server = _section(data, "server")
    if "port" in server:
        port = server["port"]
        if isinstance(port, bool) or not isinstance(port, int) or not 0 <= port <= 65535:
            raise ShrimplConfigError(f"server.port must be an integer in 0-65535, got {port!r}")
        config.port = port
    if "tls" in server:
        config.tls = _bool(server["tls"], "server.tls")
    if "host" in server:
        config.host = _str(server["host"], "server.host")

    tls = _section(data, "tls")
    if "cert" in tls:
        config.tls_cert = _str(tls["cert"], "tls.cert")
    if "key" in tls:
        config.tls_key = _str(tls["key"], "tls.key")

    limits = _section(data, "limits")
    for name in ("max_repeat", "max_call_depth"):
        if name in limits:
            value = limits[name]
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ShrimplConfigError(f"limits.{name} must be a positive integer, got {value!r}")
            setattr(config, name, value)

    secrets = _section(data, "secrets")
    config.secrets = {str(k): _str(v, f"secrets.{k}") for k, v in secrets.items()}

    unknown = set(data) - {"server", "tls", "limits", "secrets"}
    if unknown:
        raise ShrimplConfigError(f"Unknown config section(s): {', '.join(sorted(map(str, unknown)))}")
    return config


def _section(data: Mapping, name: str) -> Mapping:
    value = data.get(name)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ShrimplConfigError(f"Config section '{name}' must be a mapping")
    return value


def _bool(value: Any, where: str) -> bool:
    if not isinstance(value, bool):
        raise ShrimplConfigError(f"{where} must be true or false, got {value!r}")
    return value


def _str(value: Any, where: str) -> str:
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ShrimplConfigError(f"{where} must be a string, got {value!r}")
    return str(value)


def apply_server(program: Program, config: ShrimplConfig) -> Program:
    """Returns a copy of `program` whose server settings honour the config overrides."""
    server = program.server
    if config.port is not None:
        server = dataclasses.replace(server, port=config.port)
    if config.tls is not None:
        server = dataclasses.replace(server, tls=config.tls)
    if server == program.server:
        return program
    return dataclasses.replace(program, server=server)


class EnvSecretResolver:
    """Looks a secret key up in the process environment, then in the config's secrets."""

    def __init__(self, environ: Optional[Mapping[str, str]] = None,
                 fallback: Optional[Mapping[str, str]] = None):
        self.environ = os.environ if environ is None else environ
        self.fallback = dict(fallback or {})

    def __call__(self, key: str) -> Optional[str]:
        value = self.environ.get(key)
        if value is not None:
            return value
        return self.fallback.get(key)
