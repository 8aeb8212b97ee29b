from datetime import date
from pathlib import Path
from typing import Any

from compress_logs import ConfigNamespace, LogLevel, create_parser, derive_compressed_pattern


PATTERN = r"^app-(?P<year>\d{4})-(?P<month>\d{2})-(?P<day>\d{2})\.log$"


def create_files(directory: Path, names: list[str]) -> list[Path]:
    files: list[Path] = []
    for name in names:
        file = directory / name
        file.write_text(name)
        files.append(file)
    return files


def make_args(**overrides: Any) -> ConfigNamespace:
    """Build a ConfigNamespace like the parser would, with sensible defaults."""
    parser = create_parser()
    defaults: dict[str, Any] = dict(
        path="",
        file_pattern=PATTERN,
        compressed_pattern=r"\.xz$",
        keep_files=None,
        dry_run=False,
        lock_base="",
        today=date(2024, 1, 3),
        verbose=LogLevel.INFO,
        log_file=None,
        log_backups=7,
        stacktrace=False,
    )
    defaults.update(overrides)
    ns = ConfigNamespace(**defaults)
    ns.pattern_compiled = parser._compile_regex(ns.file_pattern)
    ns.compressed_pattern_full = derive_compressed_pattern(ns.file_pattern, ns.compressed_pattern)
    ns.compressed_compiled = parser._compile_regex(ns.compressed_pattern_full)
    return ns
