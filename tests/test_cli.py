"""
Tests for CLI argument handling.
"""

from tierscope.cli import COMMANDS, build_parser, main


def test_no_command_prints_help(capsys):
    assert main([]) == 1
    assert "usage: tierscope" in capsys.readouterr().out


def test_analyze_arguments():
    args = build_parser().parse_args(
        ["analyze", "KTA", "https://keeta.com/wp.pdf", "--kind", "whitepaper", "--verify", "0xabc", "--force"]
    )

    assert COMMANDS[args.command].__name__ == "cmd_analyze"
    assert (args.symbol, args.url, args.kind, args.verify, args.force) == (
        "KTA",
        "https://keeta.com/wp.pdf",
        "whitepaper",
        "0xabc",
        True,
    )
    assert args.project_id is None


def test_reprocess_defaults():
    args = build_parser().parse_args(["reprocess"])
    assert (args.kind, args.limit) == ("website", 50)
