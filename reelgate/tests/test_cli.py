"""Tests for the reelgate CLI."""

from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from reelgate.cli import app
from reelgate.security.passwords import verify_password
from reelgate.tests.helpers import FAST_PARAMS


@pytest.fixture
def cli_runner():
    return CliRunner()


class TestGenerateKey:
    def test_prints_urlsafe_key(self, cli_runner):
        result = cli_runner.invoke(app, ["generate-key"])
        assert result.exit_code == 0
        key = result.output.strip()
        assert len(key) >= 64
        assert all(c.isalnum() or c in "-_" for c in key)

    def test_rejects_short_keys(self, cli_runner):
        result = cli_runner.invoke(app, ["generate-key", "--bytes", "16"])
        assert result.exit_code == 1
        assert "at least 32 bytes" in result.output


class TestHashPassword:
    def test_hash_verifies(self, cli_runner):
        with patch("reelgate.cli._params", return_value=FAST_PARAMS):
            result = cli_runner.invoke(app, ["hash-password"], input="hunter2hunter2\nhunter2hunter2\n")
        assert result.exit_code == 0
        encoded = result.output.strip().splitlines()[-1]
        assert verify_password("hunter2hunter2", encoded)
        assert not verify_password("hunter3", encoded)
