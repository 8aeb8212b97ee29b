"""Tests for the argument parser and the validation of the patterns."""

import sys
from datetime import date
from pathlib import Path

import pytest

from compress_logs import DEFAULT_COMPRESSED_PATTERN, LOCK_DIR_BASE, LogLevel, ModernStrictArgumentParser, create_parser, parse_arguments

from conftest import PATTERN


@pytest.mark.parametrize(
    "argv",
    [
        [".", PATTERN, "-k", "2", "-k", "3"],  # duplicate short flag
        [".", PATTERN, "--keep-files", "2", "--keep-files", "3"],  # duplicate long flag
        [".", PATTERN, "-k", "2", "--keep-files", "3"],  # combined long and short flag
    ],
)
def test_duplicate_flags_raise_system_exit(argv) -> None:
    """Providing the same flag twice should cause the parser to exit with an error."""
    parser = create_parser()
    with pytest.raises(SystemExit) as exc:
        parser.parse_known_args(argv)
    assert exc.value.code == 1


@pytest.mark.parametrize(
    "argv, suggest, error",
    [
        ([".", PATTERN, "--unknown-option"], None, "Unknown option: --unknown-option"),
        ([".", PATTERN, "-Q"], None, "Unknown option: -Q"),
        ([".", PATTERN, "--dry-rum"], "dry-run?", None),
        ([".", PATTERN, "-k", "1"], None, "must be an integer > 1"),
    ],
)
def test_unknown_option_suggestion_or_error(argv, suggest, error, capsys: pytest.CaptureFixture[str]) -> None:
    """Unknown options should result in SystemExit with an appropriate error message."""
    parser = create_parser()
    with pytest.raises(SystemExit) as exc:
        parser.parse_known_args(argv)
    assert exc.value.code == 1
    captured = capsys.readouterr()
    if suggest:
        assert "did you mean --" + suggest in captured.err
    else:
        assert "did you mean" not in captured.err
    if error:
        assert error in captured.err


def test_missing_positional_arguments(capsys: pytest.CaptureFixture[str]) -> None:
    parser = create_parser()
    with pytest.raises(SystemExit) as exc:
        parser.parse_known_args(["."])
    assert exc.value.code == 1
    assert "required" in capsys.readouterr().err


@pytest.mark.parametrize(
    "pattern, missing",
    [
        (r"app-(?P<year>\d{4})-(?P<month>\d{2})\.log$", "day"),
        (r"app-(\d{4})-(\d{2})-(\d{2})\.log$", "year, month, day"),
        (r"app-(?P<year>\d{4})-(?P<mon>\d{2})-(?P<day>\d{2})\.log$", "month"),
    ],
)
def test_pattern_without_required_groups(pattern: str, missing: str, capsys: pytest.CaptureFixture[str]) -> None:
    """A pattern lacking one of the named groups is a fatal configuration error."""
    parser = create_parser()
    with pytest.raises(SystemExit) as exc:
        parser.parse_known_args([".", pattern])
    assert exc.value.code == 1
    assert f"missing named group(s) {missing}" in capsys.readouterr().err


def test_invalid_regex(capsys: pytest.CaptureFixture[str]) -> None:
    parser = create_parser()
    with pytest.raises(SystemExit) as exc:
        parser.parse_known_args([".", "[invalid"])
    assert exc.value.code == 1
    assert "Invalid regular expression" in capsys.readouterr().err


def test_compile_regex_is_case_insensitive() -> None:
    parser = ModernStrictArgumentParser()
    pattern = parser._compile_regex(PATTERN)
    assert pattern is not None and pattern.search("APP-2024-01-01.LOG")


def test_defaults(monkeypatch) -> None:
    monkeypatch.setattr(sys, "argv", ["compress_logs.py", ".", PATTERN])
    args = parse_arguments()
    assert args.keep_files is None
    assert args.compressed_pattern == DEFAULT_COMPRESSED_PATTERN
    assert args.compressed_pattern_full == r"^app-(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2})\.log\.xz$"
    assert args.compressed_compiled.search("app-2024-01-01.log.xz")
    assert args.dry_run is False
    assert args.lock_base == LOCK_DIR_BASE
    assert args.today == date.today()
    assert args.log_file is None
    assert args.verbose == LogLevel.INFO


def test_options(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setattr(
        sys,
        "argv",
        ["compress_logs.py", str(tmp_path), PATTERN, "-k", "5", "-c", r"\.gz$", "-X", "--lock-base", "/tmp/locks", "--today", "2024-01-03", "--log-file", "compress.log"],
    )
    args = parse_arguments()
    assert args.keep_files == 5
    assert args.compressed_compiled.search("app-2024-01-01.log.gz")
    assert not args.compressed_compiled.search("app-2024-01-01.log.xz")
    assert args.dry_run is True
    assert args.lock_base == "/tmp/locks"
    assert args.today == date(2024, 1, 3)
    assert args.log_file == tmp_path / "compress.log"


@pytest.mark.parametrize(
    "argv, loglevel",
    [
        (["compress_logs.py", ".", PATTERN, "-V"], LogLevel.INFO),
        (["compress_logs.py", ".", PATTERN, "--verbose", "DEBUG"], LogLevel.DEBUG),
        (["compress_logs.py", ".", PATTERN, "-V", "0"], LogLevel.ERROR),
        (["compress_logs.py", ".", PATTERN, "-X", "-V", "warn"], LogLevel.WARN),
    ],
)
def test_verbose_levels(monkeypatch, argv, loglevel) -> None:
    monkeypatch.setattr(sys, "argv", argv)
    assert parse_arguments().verbose == loglevel


def test_help_exits_successfully(capsys: pytest.CaptureFixture[str]) -> None:
    parser = create_parser()
    with pytest.raises(SystemExit) as exc:
        parser.parse_known_args(["--help"])
    assert exc.value.code == 0
    assert "--keep-files" in capsys.readouterr().out
