"""Tests for CLI module."""

from unittest.mock import AsyncMock, patch

import yaml
from click.testing import CliRunner

from paddlelink import __version__
from paddlelink.cli import EchoGame, main
from paddlelink.errors import RelayBindError
from paddlelink.protocols import Route


class FakeControllerSession:
    """Controller session stand-in recording what the CLI sends."""

    instances: list["FakeControllerSession"] = []

    def __init__(self, room_id, url=None, config=None):
        self.room_id = room_id
        self.url = url
        self.player_id = "p1"
        self.side = None
        self.moves = []
        FakeControllerSession.instances.append(self)

    async def select_side(self, side):
        self.side = side
        return Route.RELAY

    async def move(self, direction):
        self.moves.append(direction)
        return Route.DIRECT

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None


class TestCli:
    """Test CLI commands."""

    def test_cli_help(self):
        runner = CliRunner()
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        assert "relay" in result.output
        assert "host" in result.output
        assert "controller" in result.output

    def test_version_command(self):
        runner = CliRunner()
        result = runner.invoke(main, ["version"])

        assert result.exit_code == 0
        assert result.output.strip() == f"paddlelink version {__version__}"

    def test_controller_requires_side(self):
        runner = CliRunner()
        result = runner.invoke(main, ["controller", "abc123"])

        assert result.exit_code != 0
        assert "--side" in result.output

    def test_controller_rejects_bad_side(self):
        runner = CliRunner()
        result = runner.invoke(main, ["controller", "abc123", "--side", "top"])

        assert result.exit_code != 0


class TestRelayCommand:
    """Test the relay command."""

    def test_bind_failure_exits_nonzero(self):
        runner = CliRunner()
        with patch(
            "paddlelink.relay.RelayServer.start",
            AsyncMock(side_effect=RelayBindError("Cannot listen on 0.0.0.0:3000")),
        ), patch("paddlelink.relay.RelayServer.close", AsyncMock()):
            result = runner.invoke(main, ["relay"])

        assert result.exit_code == 1
        assert "Cannot listen" in result.output

    def test_options_override_config_file(self, tmp_path):
        config_file = tmp_path / "config.yaml"
        config_file.write_text(yaml.dump({"port": 9000, "host": "127.0.0.1"}))
        seen = {}

        async def fake_start(server):
            seen["host"] = server.config.host
            seen["port"] = server.config.port
            raise RelayBindError("stop here")

        runner = CliRunner()
        with patch("paddlelink.relay.RelayServer.start", fake_start), patch(
            "paddlelink.relay.RelayServer.close", AsyncMock()
        ):
            runner.invoke(main, ["-c", str(config_file), "relay", "--port", "9100"])

        assert seen == {"host": "127.0.0.1", "port": 9100}


class TestSessionCommands:
    """Test the host and controller commands."""

    def test_host_unreachable_relay(self):
        runner = CliRunner()
        result = runner.invoke(
            main, ["host", "abc123", "--url", "ws://127.0.0.1:1/api/socket/ws"]
        )

        assert result.exit_code == 1
        assert "Cannot connect to relay" in result.output

    def test_controller_sends_stdin_directions(self):
        FakeControllerSession.instances.clear()
        runner = CliRunner()
        with patch("paddlelink.session.ControllerSession", FakeControllerSession):
            result = runner.invoke(
                main,
                ["controller", "abc123", "--side", "left", "--url", "ws://relay/ws"],
                input="up\nsideways\nSTOP\n",
            )

        assert result.exit_code == 0
        session = FakeControllerSession.instances[0]
        assert session.room_id == "abc123"
        assert session.side == "left"
        assert session.moves == ["up", "stop"]
        assert "up sent via direct" in result.output
        assert "Unknown direction: 'sideways'" in result.output


class TestEchoGame:
    """Test the printing game loop."""

    def test_prints_commands(self, capsys):
        game = EchoGame()

        game.move_paddle("left", "up")
        game.stop_paddle("left")

        assert capsys.readouterr().out == "move paddle left up\npaddle stopped left\n"
