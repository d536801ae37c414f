from __future__ import annotations

import json
from pathlib import Path

import pytest

from presence_probe.config import (
    DEFAULT_QUIC_PORT,
    DEFAULT_TCP_PORT,
    FORTUNE_DIR,
    parse_config,
    parse_destination,
    resolve_quote_file,
)
from presence_probe.errors import ConfigError


def test_getopt_style_short_flags():
    config = parse_config([
        "-u", "bot1", "-p", "pw", "-l", "3", "-s", "10", "-t", "1",
        "-r", "hall", "-d", "7", "-f", "wisdom", "-L", "chat.example.net:7000",
    ])
    assert config.user == "bot1"
    assert config.password == "pw"
    assert config.loop_count == 3
    assert config.message_size == 10
    assert config.interval == 1.0
    assert config.room == "hall"
    assert config.max_lag == 7
    assert config.quote_file == "wisdom"
    assert config.lag_to_log is True
    assert config.transport.host == "chat.example.net"
    assert config.transport.port == 7000


def test_defaults():
    config = parse_config(["-u", "bot1", "localhost"])
    assert config.interval == 10.0
    assert config.loop_count == 10
    assert config.message_size == 25
    assert config.max_lag == 5
    assert config.talk_every == 5
    assert config.lag_to_log is False
    assert config.avatar_file == Path("avs/av1.gif")
    assert config.room is None


def test_json_file_is_overridden_by_command_line(tmp_path):
    path = tmp_path / "probe.json"
    path.write_text(json.dumps({
        "user": "from-file",
        "community": "tls://chat.example.net",
        "loop_count": 50,
        "tls": {"verify": False},
    }), encoding="utf-8")
    config = parse_config(["--config", str(path), "-l", "4"])
    assert config.user == "from-file"
    assert config.loop_count == 4
    assert config.transport.scheme == "tls"
    assert config.transport.tls.enabled is True
    assert config.transport.tls.verify is False


def test_unknown_json_keys_are_rejected(tmp_path):
    path = tmp_path / "probe.json"
    path.write_text(json.dumps({"user": "x", "community": "h", "colour": "red"}), encoding="utf-8")
    with pytest.raises(ConfigError):
        parse_config(["--config", str(path)])


def test_numeric_strings_from_json_are_converted(tmp_path):
    path = tmp_path / "probe.json"
    path.write_text(json.dumps({
        "user": "from-file",
        "community": "h",
        "loop_count": "3",
        "interval": "0.5",
        "seed": 7,
    }), encoding="utf-8")
    config = parse_config(["--config", str(path)])
    assert config.loop_count == 3
    assert config.interval == 0.5
    assert config.seed == 7


@pytest.mark.parametrize("settings", [
    {"loop_count": "three"},
    {"loop_count": True},
    {"loop_count": 2.5},
    {"interval": "soon"},
    {"interval": None},
    {"op_timeout": "nan"},
    {"lag_to_log": "yes"},
    {"user": 42},
    {"tls": {"verify": "no"}},
    {"tls": ["verify"]},
])
def test_mistyped_json_values_are_config_errors(tmp_path, settings):
    path = tmp_path / "probe.json"
    path.write_text(json.dumps(dict({"user": "x", "community": "h"}, **settings)), encoding="utf-8")
    with pytest.raises(ConfigError):
        parse_config(["--config", str(path)])


@pytest.mark.parametrize("argv", [
    ["localhost"],
    ["-u", "bot"],
    ["-u", "bot", "-t", "0", "localhost"],
    ["-u", "bot", "-l", "-1", "localhost"],
    ["-u", "bot", "--talk-every", "0", "localhost"],
])
def test_invalid_settings(argv):
    with pytest.raises(ConfigError):
        parse_config(argv)


@pytest.mark.parametrize("destination, expected", [
    ("host", ("tcp", "host", DEFAULT_TCP_PORT, False)),
    ("host:1234", ("tcp", "host", 1234, False)),
    ("tls://host", ("tls", "host", DEFAULT_TCP_PORT, True)),
    ("quic://host", ("quic", "host", DEFAULT_QUIC_PORT, False)),
    ("tcp://[::1]:9000", ("tcp", "::1", 9000, False)),
])
def test_parse_destination(destination, expected):
    transport = parse_destination(destination)
    assert (transport.scheme, transport.host, transport.port, transport.tls.enabled) == expected


@pytest.mark.parametrize("destination", ["", "ftp://host", "host:abc", "host:70000"])
def test_bad_destinations(destination):
    with pytest.raises(ConfigError):
        parse_destination(destination)


def test_quote_file_resolution(tmp_path):
    local = tmp_path / "mine"
    local.write_text("x\n", encoding="utf-8")
    assert resolve_quote_file(str(local)) == local
    assert resolve_quote_file("zippy") == FORTUNE_DIR / "zippy"
