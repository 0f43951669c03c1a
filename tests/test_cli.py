"""Tests for CLI argument handling."""

from unittest.mock import patch

import pytest

from scripts.sso_transfer.cli import build_options, build_parser, cmd_client_secret


def parse(*argv):
    return build_parser().parse_args(list(argv))


def test_migrate_defaults():
    options = build_options(parse("migrate"))

    assert (options.start, options.end) == (0, 620000)
    assert options.output == "transfer.csv"
    assert not options.skip_provision
    assert not options.skip_output


def test_migrate_flags():
    options = build_options(
        parse("migrate", "-s", "100", "-e", "200", "-o", "out.csv", "--skip-provision")
    )

    assert (options.start, options.end, options.output) == (100, 200, "out.csv")
    assert options.skip_provision


def test_one_collapses_range():
    options = build_options(parse("one", "601955", "--skip-output"))

    assert options.start == options.end == 601955
    assert options.skip_output


def test_command_is_required():
    with pytest.raises(SystemExit):
        parse()


def test_client_secret_prints_assertion(transfer_config, capsys):
    with patch("scripts.sso_transfer.cli.load_transfer_config", return_value=transfer_config):
        cmd_client_secret(parse("client-secret"))

    assert capsys.readouterr().out.strip().count(".") == 2


def test_client_secret_requires_config():
    with patch("scripts.sso_transfer.cli.load_transfer_config", return_value=None):
        with pytest.raises(ValueError):
            cmd_client_secret(parse("client-secret"))
