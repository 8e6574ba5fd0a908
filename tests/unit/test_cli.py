import pytest
from unittest.mock import patch
from click.testing import CliRunner

from cli import config
from cli.main import cli


@pytest.fixture
def settings_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(config, "CONFIG_DIR", tmp_path)
    monkeypatch.setattr(config, "SETTINGS_FILE", tmp_path / "settings.json")
    monkeypatch.delenv("AUCTION_SERVER_URL", raising=False)
    return tmp_path


def test_settings_round_trip(settings_dir):
    config.save_session("token-1", "alice")
    config.update_settings(timezone="Europe/London")

    assert config.get_token() == "token-1"
    assert config.get_username() == "alice"
    assert config.get_timezone() == "Europe/London"
    assert config.get_server_url() == config.DEFAULT_SERVER_URL

    config.update_settings(token=None)
    assert config.get_token() is None
    assert config.get_username() == "alice"


def test_server_url_from_environment_wins(settings_dir, monkeypatch):
    config.update_settings(server_url="http://stored:8000")
    assert config.get_server_url() == "http://stored:8000"
    monkeypatch.setenv("AUCTION_SERVER_URL", "http://env:9000")
    assert config.get_server_url() == "http://env:9000"


def test_configure_keeps_other_settings(settings_dir):
    runner = CliRunner()
    runner.invoke(cli, ["configure", "--timezone", "America/New_York"])
    result = runner.invoke(cli, ["configure", "--server", "http://auctions:8000"])

    assert result.exit_code == 0
    assert "America/New_York" in result.output
    assert config.load_settings() == {"timezone": "America/New_York", "server_url": "http://auctions:8000"}


def test_configure_rejects_unknown_timezone(settings_dir):
    result = CliRunner().invoke(cli, ["configure", "--timezone", "Mars/Olympus"])
    assert result.exit_code == 1
    assert config.load_settings() == {}


def test_list_mine_filters_by_stored_username(settings_dir):
    config.save_session("token-1", "alice")
    with patch("cli.main.AuctionClient") as client_class:
        client_class.return_value.list_auctions.return_value = []
        result = CliRunner().invoke(cli, ["list", "--mine"])

    assert result.exit_code == 0
    client_class.return_value.list_auctions.assert_called_once_with(status=None, seller_id="alice")
    assert "No matching auctions." in result.output


def test_edit_sends_only_given_fields(settings_dir):
    with patch("cli.main.AuctionClient") as client_class:
        client_class.return_value.update_auction.return_value = {"id": 7}
        result = CliRunner().invoke(cli, ["edit", "7", "--title", "New title", "--reserve", "$1,200"])

    assert result.exit_code == 0
    client_class.return_value.update_auction.assert_called_once_with(
        7, {"title": "New title", "reserve_price": "1200"}
    )
