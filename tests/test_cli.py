from __future__ import annotations

from unittest.mock import patch

import pytest

from socks5d import __version__, cli
from socks5d.config import Config


def clear_env(monkeypatch) -> None:
    for env_var in Config.env_mappings:
        monkeypatch.delenv(env_var, raising=False)


def test_parser_builds() -> None:
    p = cli.build_parser()
    args = p.parse_args([])
    assert args.port is None
    assert args.loglevel == "INFO"


def test_parser_options() -> None:
    args = cli.build_parser().parse_args(
        ["-p", "2080", "--host", "127.0.0.1", "--dns", "1.1.1.1", "--dns", "8.8.8.8:53"]
    )
    assert args.port == 2080
    assert args.host == "127.0.0.1"
    assert args.dns == ["1.1.1.1", "8.8.8.8:53"]


def test_help_mentions_default_port(capsys) -> None:
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["-h"])
    assert exc_info.value.code == 0
    assert "1080" in capsys.readouterr().out


def test_version(capsys) -> None:
    with pytest.raises(SystemExit):
        cli.main(["--version"])
    assert __version__ in capsys.readouterr().out


def test_invalid_port_exits_2(tmp_path, monkeypatch) -> None:
    clear_env(monkeypatch)
    rc = cli.main(["-p", "70000", "--config", str(tmp_path / "absent.yaml")])
    assert rc == 2


def test_main_runs_server(tmp_path, monkeypatch) -> None:
    clear_env(monkeypatch)

    async def fake_serve(config):
        assert config.port == 2080

    with patch.object(cli, "_serve", fake_serve):
        rc = cli.main(["-p", "2080", "--config", str(tmp_path / "absent.yaml")])
    assert rc == 0


def test_bind_failure_exits_1(tmp_path, monkeypatch) -> None:
    clear_env(monkeypatch)

    async def fake_serve(config):
        raise OSError("address in use")

    with patch.object(cli, "_serve", fake_serve):
        rc = cli.main(["-p", "2080", "--config", str(tmp_path / "absent.yaml")])
    assert rc == 1
