"""Probe configuration: command line layered over an optional JSON file."""

from __future__ import annotations

import argparse
import json
import math
import ssl
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from .errors import ConfigError

DEFAULT_TCP_PORT = 9100
DEFAULT_QUIC_PORT = 6121
SCHEMES = ("tcp", "tls", "quic")
FORTUNE_DIR = Path("/usr/share/games/fortune")


@dataclass(frozen=True)
class TLSOptions:
    enabled: bool = False
    verify: bool = True
    ca_file: Optional[str] = None
    cert_file: Optional[str] = None
    key_file: Optional[str] = None


@dataclass(frozen=True)
class TransportConfig:
    scheme: str = "tcp"
    host: str = "127.0.0.1"
    port: int = DEFAULT_TCP_PORT
    tls: TLSOptions = field(default_factory=TLSOptions)

    @property
    def label(self) -> str:
        return f"{self.scheme}://{self.host}:{self.port}"


@dataclass(frozen=True)
class ProbeConfig:
    user: str
    community: str
    password: str = ""
    room: Optional[str] = None
    avatar_file: Optional[Path] = Path("avs/av1.gif")
    interval: float = 10.0
    loop_count: int = 10
    message_size: int = 25
    max_lag: int = 5
    lag_to_log: bool = False
    quote_file: str = "zippy"
    talk_every: int = 5
    connect_timeout: float = 10.0
    handshake_timeout: float = 30.0
    op_timeout: float = 10.0
    log_level: str = "INFO"
    lag_log_file: Optional[Path] = None
    seed: Optional[int] = None
    transport: TransportConfig = field(default_factory=TransportConfig)


def parse_destination(destination: str, tls: Optional[TLSOptions] = None) -> TransportConfig:
    """Parse ``[scheme://]host[:port]`` into a transport configuration."""
    text = destination.strip()
    if not text:
        raise ConfigError("community destination is empty")
    scheme = "tcp"
    if "://" in text:
        scheme, text = text.split("://", 1)
        scheme = scheme.lower()
        if scheme not in SCHEMES:
            raise ConfigError(f"unsupported scheme {scheme!r} (expected one of {', '.join(SCHEMES)})")
    text = text.rstrip("/")
    host = text
    port = DEFAULT_QUIC_PORT if scheme == "quic" else DEFAULT_TCP_PORT
    if text.startswith("["):
        closing = text.find("]")
        if closing < 0:
            raise ConfigError(f"malformed IPv6 destination: {destination}")
        host = text[1:closing]
        rest = text[closing + 1:]
        if rest.startswith(":"):
            port = _parse_port(rest[1:], destination)
    elif text.count(":") == 1:
        host, port_text = text.split(":", 1)
        port = _parse_port(port_text, destination)
    if not host:
        raise ConfigError(f"destination has no host: {destination}")
    tls_opts = tls or TLSOptions()
    if scheme == "tls":
        tls_opts = replace(tls_opts, enabled=True)
    elif scheme == "tcp":
        tls_opts = replace(tls_opts, enabled=False)
    return TransportConfig(scheme=scheme, host=host, port=port, tls=tls_opts)


def _parse_port(text: str, destination: str) -> int:
    try:
        port = int(text)
    except ValueError as exc:
        raise ConfigError(f"invalid port in destination: {destination}") from exc
    if not 0 < port < 65536:
        raise ConfigError(f"port out of range in destination: {destination}")
    return port


def resolve_quote_file(name: str) -> Path:
    candidate = Path(name).expanduser()
    if candidate.is_file() or candidate.is_absolute():
        return candidate
    return FORTUNE_DIR / name


def create_ssl_context(tls: TLSOptions) -> Optional[ssl.SSLContext]:
    if not tls.enabled:
        return None
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    if not tls.verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    if tls.ca_file:
        context.load_verify_locations(tls.ca_file)
    if tls.cert_file:
        context.load_cert_chain(tls.cert_file, tls.key_file)
    return context


def load_json_config(path: Path) -> Dict[str, Any]:
    try:
        with path.expanduser().open("r", encoding="utf-8") as fh:
            data = json.load(fh)
    except FileNotFoundError as exc:
        raise ConfigError(f"config file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"config file {path} is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a JSON object")
    return data


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Presence chat latency probe: whispers to itself and reports lag",
    )
    parser.add_argument("community", nargs="?", help="Community destination, [tcp|tls|quic://]host[:port]")
    parser.add_argument("-u", "--user", help="User name to sign on with")
    parser.add_argument("-p", "--password", help="Password for the user")
    parser.add_argument("-r", "--room", help="Room to enter (defaults to the community lobby)")
    parser.add_argument("-a", "--avatar", dest="avatar_file", help="Avatar image file to wear")
    parser.add_argument("-t", "--interval", type=float, help="Seconds between probes")
    parser.add_argument("-l", "--loops", dest="loop_count", type=int, help="Number of probes to send")
    parser.add_argument("-s", "--size", dest="message_size", type=int, help="Probe filler length")
    parser.add_argument("-d", "--max-lag", dest="max_lag", type=int, help="Acceptable round trip in seconds")
    parser.add_argument("-f", "--quotes", dest="quote_file", help="Fortune file name or path")
    parser.add_argument("-L", "--lag-to-log", dest="lag_to_log", action="store_const", const=True,
                        help="Report lag to the log instead of the room")
    parser.add_argument("--lag-log", dest="lag_log_file", help="Append lag reports to this file")
    parser.add_argument("--talk-every", dest="talk_every", type=int, help="Ticks between ambient quotes")
    parser.add_argument("--connect-timeout", dest="connect_timeout", type=float, help="Connect timeout seconds")
    parser.add_argument("--handshake-timeout", dest="handshake_timeout", type=float,
                        help="Seconds allowed from connect to place sign-on")
    parser.add_argument("--op-timeout", dest="op_timeout", type=float, help="Per-operation timeout seconds")
    parser.add_argument("--seed", type=int, help="Seed for the random walk and quote picks")
    parser.add_argument("--config", type=Path, help="JSON file with default settings")
    parser.add_argument("--log-level", help="Logging level")
    parser.add_argument("--ca", help="CA bundle for TLS/QUIC")
    parser.add_argument("--cert", help="Client certificate for TLS")
    parser.add_argument("--key", help="Client key for TLS")
    parser.add_argument("--no-verify", dest="no_verify", action="store_true", help="Disable certificate validation")
    return parser


_PATH_FIELDS = {"avatar_file", "lag_log_file"}
_OPTIONAL_FIELDS = {"room", "avatar_file", "lag_log_file", "seed"}

# Value kinds accepted from the command line and the JSON file.
_FIELD_KINDS: Dict[str, type] = {
    "user": str,
    "community": str,
    "password": str,
    "room": str,
    "avatar_file": str,
    "interval": float,
    "loop_count": int,
    "message_size": int,
    "max_lag": int,
    "lag_to_log": bool,
    "quote_file": str,
    "talk_every": int,
    "connect_timeout": float,
    "handshake_timeout": float,
    "op_timeout": float,
    "log_level": str,
    "lag_log_file": str,
    "seed": int,
}
_TLS_KINDS: Dict[str, type] = {
    "enabled": bool,
    "verify": bool,
    "ca_file": str,
    "cert_file": str,
    "key_file": str,
}
_KIND_NAMES = {str: "a string", int: "an integer", float: "a number", bool: "true or false"}


def _coerce(name: str, value: Any, kind: type) -> Any:
    """Return ``value`` as ``kind``; numeric strings are accepted for numbers."""
    if kind is bool:
        if isinstance(value, bool):
            return value
    elif kind is str:
        if isinstance(value, (str, Path)):
            return str(value)
    elif not isinstance(value, bool):
        try:
            if kind is int and isinstance(value, float) and not value.is_integer():
                raise ValueError(value)
            number = kind(value.strip() if isinstance(value, str) else value)
        except (TypeError, ValueError):
            pass
        else:
            if kind is int or math.isfinite(number):
                return number
    raise ConfigError(f"{name} must be {_KIND_NAMES[kind]}, got {value!r}")


def _coerce_values(values: Dict[str, Any], kinds: Dict[str, type], optional=frozenset()) -> None:
    for name, kind in kinds.items():
        if name not in values:
            continue
        if values[name] is None and name in optional:
            continue
        values[name] = _coerce(name, values[name], kind)


def build_config(args: argparse.Namespace) -> ProbeConfig:
    """Merge JSON defaults (if any) with command line values and validate."""
    values: Dict[str, Any] = {}
    if args.config:
        values.update(load_json_config(args.config))

    known = {f.name for f in fields(ProbeConfig)} - {"transport"}
    unknown = sorted(set(values) - known - {"tls"})
    if unknown:
        raise ConfigError(f"unknown config keys: {', '.join(unknown)}")

    for name in known:
        override = getattr(args, name, None)
        if override is not None:
            values[name] = override

    tls_section = values.pop("tls", None) or {}
    if not isinstance(tls_section, dict):
        raise ConfigError("tls must be a JSON object")
    tls_values = dict(tls_section)
    if args.ca:
        tls_values["ca_file"] = args.ca
    if args.cert:
        tls_values["cert_file"] = args.cert
    if args.key:
        tls_values["key_file"] = args.key
    if args.no_verify:
        tls_values["verify"] = False
    _coerce_values(tls_values, _TLS_KINDS)
    try:
        tls = TLSOptions(**tls_values)
    except TypeError as exc:
        raise ConfigError(f"invalid tls options: {exc}") from exc

    if not values.get("user"):
        raise ConfigError("a user name is required (-u)")
    if not values.get("community"):
        raise ConfigError("a community destination is required")
    _coerce_values(values, _FIELD_KINDS, _OPTIONAL_FIELDS)
    for name in _PATH_FIELDS:
        if values.get(name):
            values[name] = Path(values[name])
    if values.get("avatar_file") == "":
        values["avatar_file"] = None

    values["transport"] = parse_destination(str(values["community"]), tls)
    try:
        config = ProbeConfig(**values)
    except TypeError as exc:
        raise ConfigError(f"invalid configuration: {exc}") from exc
    validate_config(config)
    return config


def validate_config(config: ProbeConfig) -> None:
    if config.interval <= 0:
        raise ConfigError("interval must be positive")
    if config.loop_count < 0:
        raise ConfigError("loop count must not be negative")
    if config.message_size < 0:
        raise ConfigError("message size must not be negative")
    if config.max_lag < 0:
        raise ConfigError("max lag must not be negative")
    if config.talk_every <= 0:
        raise ConfigError("talk cadence must be positive")
    for name in ("connect_timeout", "handshake_timeout", "op_timeout"):
        if getattr(config, name) <= 0:
            raise ConfigError(f"{name.replace('_', ' ')} must be positive")


def parse_config(argv: Optional[Sequence[str]] = None) -> ProbeConfig:
    args = build_arg_parser().parse_args(argv)
    return build_config(args)
