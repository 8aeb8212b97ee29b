#
# compress-logs
#
# A small CLI tool to compress dated log files and to apply a retention count to the compressed ones.
#
# Copyright (c) 2025-2026 Thomas Kuhlmann
#
# Licensed under the MIT License. See LICENSE file in the project root for license information.
#

import argparse
import fcntl
import hashlib
import logging
import logging.handlers
import re
import subprocess
import sys
import traceback
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import IntEnum
from pathlib import Path
from types import SimpleNamespace
from typing import NoReturn, Optional, TextIO, no_type_check


VERSION: str = "dev-1.0.0"

REQUIRED_GROUPS: tuple[str, ...] = ("year", "month", "day")

LOCK_DIR_BASE: str = "/run"
LOCK_DIR_NAME: str = "compress_logs"
LOCK_FILE_NAME: str = "process.lock"

COMPRESSOR_COMMAND: tuple[str, ...] = ("xz", "-9")
COMPRESSED_EXTENSION: str = ".xz"
DEFAULT_COMPRESSED_PATTERN: str = r"\.xz$"

EXCEPTION_LOG_NAME: str = "exceptions.log"

EXIT_FAILURE: int = 1
EXIT_ALREADY_RUNNING: int = 10


class ConcurrencyError(Exception):
    pass


class PatternError(ValueError):
    pass


class NothingToDoError(Exception):
    def __init__(self, message: str, level: "LogLevel") -> None:
        super().__init__(message)
        self.level = level


class ConfigNamespace(SimpleNamespace):
    pass


@dataclass(frozen=True)
class FileCandidate:
    name: str
    date: date


@dataclass(frozen=True)
class CompressedFileRecord:
    name: str
    date: date


@dataclass
class SelectionDecision:
    candidate: FileCandidate
    skip: bool
    reason: str


class LogLevel(IntEnum):
    ERROR = 0
    WARN = 1
    INFO = 2
    DEBUG = 3

    @classmethod
    def from_name_or_number(cls, prefix: str) -> "LogLevel":
        try:
            return next(m for m in cls if m.name.startswith(prefix.upper()))
        except StopIteration:
            try:
                return cls(int(prefix))
            except ValueError:
                raise ValueError("Invalid log level: " + prefix)

    def to_logging_level(self) -> int:
        return {LogLevel.ERROR: logging.ERROR, LogLevel.WARN: logging.WARNING, LogLevel.INFO: logging.INFO, LogLevel.DEBUG: logging.DEBUG}[self]


class Logger:
    _decisions: dict[str, list[tuple[str, Optional[str]]]]
    _args: ConfigNamespace
    _file_logger: Optional[logging.Logger]

    def __init__(self, args: ConfigNamespace) -> None:
        self._args = args
        self._decisions = defaultdict(list)
        self._file_logger = None
        if getattr(args, "log_file", None) is not None:
            self._file_logger = self._create_file_logger(Path(args.log_file), getattr(args, "log_backups", 7))

    @staticmethod
    def _create_file_logger(log_file: Path, backups: int) -> logging.Logger:
        file_logger = logging.getLogger(f"compress_logs.file.{log_file}")
        for handler in list(file_logger.handlers):
            file_logger.removeHandler(handler)
            handler.close()
        handler = logging.handlers.TimedRotatingFileHandler(log_file, when="midnight", backupCount=backups, encoding="utf-8", delay=True)
        handler.setFormatter(logging.Formatter("%(asctime)s %(message)s"))
        file_logger.addHandler(handler)
        file_logger.setLevel(logging.DEBUG)
        file_logger.propagate = False
        return file_logger

    def close(self) -> None:
        if self._file_logger is not None:
            for handler in list(self._file_logger.handlers):
                self._file_logger.removeHandler(handler)
                handler.close()
            self._file_logger = None

    def has_log_level(self, level: LogLevel) -> bool:
        return level <= int(self._args.verbose)

    def _raw_verbose(self, level: LogLevel, message: str, file: Optional[TextIO] = None, prefix: str = "") -> None:
        line = f"[{prefix or LogLevel(level).name}] {message}"
        if file is None:
            file = sys.stderr if level <= LogLevel.WARN else sys.stdout
        print(line, file=file)
        if self._file_logger is not None:
            self._file_logger.log(LogLevel(level).to_logging_level(), line)

    def verbose(self, level: LogLevel, message: str, file: Optional[TextIO] = None, prefix: str = "") -> None:
        if self.has_log_level(level):
            self._raw_verbose(level, message, file, prefix)

    def add_decision(self, level: LogLevel, name: str, message: str, debug: Optional[str] = None, pos: int = 0) -> None:
        if self.has_log_level(level):
            if self.has_log_level(LogLevel.DEBUG):  # Decision history and debug details only with debug log level
                self._decisions[name].insert(pos, (message, debug))
            else:  # Without debug log level no decision history
                if self._decisions[name]:
                    self._decisions[name][0] = (message, None)
                else:
                    self._decisions[name].insert(0, (message, None))

    def _format_decision(self, decision: tuple[str, Optional[str]]) -> str:
        message, debug = decision
        return message + (f" ({debug})" if debug is not None else "")

    def print_decisions(self) -> None:
        """Print the decision table collected so far and reset it."""
        if not self._decisions:
            return
        longest_name_length = max(len(name) for name in self._decisions)
        for name, decisions in self._decisions.items():
            if not decisions:
                continue
            self._raw_verbose(LogLevel.INFO, f"{name:<{longest_name_length}}: {self._format_decision(decisions[0])}")
            if not self.has_log_level(LogLevel.DEBUG):
                continue
            for idx, decision in enumerate(decisions[1:]):
                self._raw_verbose(LogLevel.DEBUG, f"{' ' * ((longest_name_length + 2) + idx * 4)}└── {self._format_decision(decision)}")
        self._decisions.clear()


def derive_compressed_pattern(file_pattern: str, compressed_pattern: str) -> str:
    """Append the compressed suffix to the file pattern, dropping a trailing end anchor of the file pattern."""
    if file_pattern.endswith("$") and not file_pattern.endswith("\\$"):
        file_pattern = file_pattern[:-1]
    return file_pattern + compressed_pattern


class ModernHelpFormatter(argparse.HelpFormatter):
    @no_type_check
    def __init__(self, *a, **kw) -> None:  # noqa: ANN002, ANN003
        super().__init__(*a, max_help_position=30, width=160, **kw)

    @no_type_check
    def start_section(self, heading) -> None:  # noqa: ANN001
        super().start_section(heading.capitalize())


class ModernStrictArgumentParser(argparse.ArgumentParser):
    @no_type_check
    def __init__(self, *a, **kw) -> None:  # noqa: ANN002, ANN003
        super().__init__(*a, **kw)
        self._errors: list[str] = []

    def add_error(self, msg: str) -> None:
        if msg not in self._errors:
            self._errors.append(msg)

    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        print("\nError(s):", file=sys.stderr)
        for line in message.split("\n"):
            print(f"  • {line}", file=sys.stderr)
        print("\nHint: Try '--help' for more information.", file=sys.stderr)
        sys.exit(EXIT_FAILURE)

    # Argument type helpers
    def keep_files_argument(self, value: str) -> int:
        try:
            int_value = int(value)
            if int_value <= 1:
                raise ValueError
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid value '{value}': must be an integer > 1")
        return int_value

    def positive_int_argument(self, value: str) -> int:
        try:
            int_value = int(value)
            if int_value <= 0:
                raise ValueError
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid value '{value}': must be an integer > 0")
        return int_value

    def verbose_argument(self, value: str) -> LogLevel:
        try:
            return LogLevel.from_name_or_number(value.strip())
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid verbose value '{value}' (use ERROR, WARN, INFO, DEBUG or 0, 1, 2, 3)")

    def date_argument(self, value: str) -> date:
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid date '{value}' (use YYYY-MM-DD)")

    # Internal helper methods
    def _suggest(self, argument: str) -> list[str]:
        opts = [o for a in self._actions for o in a.option_strings if o.startswith("--")]
        cand = [o for o in opts if abs(len(o) - len(argument)) <= 2 and sum(a != b for a, b in zip(o, argument)) <= 2]
        return cand[:1]

    @no_type_check
    def _collect_raw_args(self, args):  # noqa: ANN202, ANN001
        if args is not None:
            return list(args)
        return sys.argv[1:]  # default argparse behavior

    @no_type_check
    def _detect_duplicate_flags(self, raw_args) -> None:  # noqa: ANN001
        # Normalize option strings
        alias = {opt: action.option_strings[0] for action in self._actions for opt in action.option_strings}
        seen = set()

        for tok in raw_args:
            if not tok.startswith("-"):
                continue

            # Extract option (handles -k3, -k=3, --x=5)
            opt = tok.split("=", 1)[0]

            # Handle -k3 → -k
            if len(opt) > 2 and opt.startswith("-") and not opt.startswith("--"):
                opt = opt[:2]

            key = alias.get(opt, opt)

            if key in seen:
                self.add_error(f"Duplicate flag: {key}")
            seen.add(key)

    def _compile_regex(self, regex: str) -> Optional[re.Pattern[str]]:
        try:
            return re.compile(regex, re.UNICODE | re.IGNORECASE)
        except re.error:
            self.add_error(f"Invalid regular expression : {regex}")
            return None

    def _check_required_groups(self, compiled: re.Pattern[str]) -> bool:
        missing = [group for group in REQUIRED_GROUPS if group not in compiled.groupindex]
        if missing:
            self.add_error(f"Pattern '{compiled.pattern}' is invalid: missing named group(s) {', '.join(missing)}")
        return not missing

    @no_type_check
    def _validate_arguments(self, ns) -> None:  # noqa: ANN001
        # Default verbosity, if none given
        if ns.verbose is None:
            ns.verbose = LogLevel.INFO

        # regex validation (and compilation), compressed pattern only if the base pattern is valid
        ns.pattern_compiled = self._compile_regex(ns.file_pattern)
        ns.compressed_pattern_full = derive_compressed_pattern(ns.file_pattern, ns.compressed_pattern)
        ns.compressed_compiled = None
        if ns.pattern_compiled is not None and self._check_required_groups(ns.pattern_compiled):
            ns.compressed_compiled = self._compile_regex(ns.compressed_pattern_full)
            if ns.compressed_compiled is not None:
                self._check_required_groups(ns.compressed_compiled)

        if ns.today is None:
            ns.today = date.today()

        # relative log files live in the target directory
        if ns.log_file is not None:
            ns.log_file = Path(ns.path) / ns.log_file

    # Main hook
    @no_type_check
    def parse_known_args(self, args=None, namespace=None) -> tuple[argparse.Namespace, list[str]]:  # noqa: ANN001
        self._errors = []
        raw_args = self._collect_raw_args(args)
        self._detect_duplicate_flags(raw_args)

        ns, unknown = super().parse_known_args(raw_args, namespace or argparse.Namespace())

        if unknown:
            sug = self._suggest(unknown[0])
            if sug:
                self.add_error(f"Unknown option: {unknown[0]} (did you mean {sug[0]}?)")
            else:
                self.add_error(f"Unknown option: {unknown[0]}")

        self._validate_arguments(ns)

        if self._errors:
            msg = "\n".join(f"{e}" for e in self._errors)
            self.error(msg)

        return ns, unknown


def create_parser() -> ModernStrictArgumentParser:
    parser: ModernStrictArgumentParser = ModernStrictArgumentParser(
        description=f"compress-logs {VERSION}\n\nCompress dated log files (all but today's and the most recent one) and keep a maximum number of compressed files",
        usage=("compress-logs path file_pattern [options]\n\nExample:\n  compress-logs /var/log/app 'app-(?P<year>\\d{4})-(?P<month>\\d{2})-(?P<day>\\d{2})\\.log$' -k 30"),
        epilog="Use with caution!! This tool compresses and deletes files unless --dry-run is set.",
        formatter_class=ModernHelpFormatter,
        add_help=False,
    )

    g_main = parser.add_argument_group("Main arguments")
    g_ret = parser.add_argument_group("Retention arguments")
    g_behavior = parser.add_argument_group("Behavior arguments")
    g_logging = parser.add_argument_group("Logging arguments")
    g_common = parser.add_argument_group("Common arguments")

    # positional arguments
    g_main.add_argument("path", help="Directory containing the log files (recursion is not supported)")
    g_main.add_argument("file_pattern", help="Case-insensitive regex with the named groups 'year', 'month' and 'day' (use quotes to prevent shell expansion)")

    # retention arguments
    g_ret.add_argument("--keep-files", "-k", type=parser.keep_files_argument, metavar="N", default=None, help="Keep the N most recent compressed files, delete older ones (N > 1, default: disabled)")
    # fmt: off
    g_ret.add_argument("--compressed-pattern", "-c", type=str, metavar="regex", default=DEFAULT_COMPRESSED_PATTERN,
        help=f"Regex suffix appended to file_pattern to match compressed files (default: '{DEFAULT_COMPRESSED_PATTERN}')")
    # fmt: on

    # behavior flags
    g_behavior.add_argument("--dry-run", "-X", action="store_true", help="Show planned actions but do not compress or delete any files")
    g_behavior.add_argument("--lock-base", type=str, metavar="dir", default=LOCK_DIR_BASE, help=f"Base directory for lock files (default: {LOCK_DIR_BASE})")
    g_behavior.add_argument("--today", type=parser.date_argument, default=None, help=argparse.SUPPRESS)

    # logging flags
    # fmt: off
    g_logging.add_argument("--verbose", "-V", "-v", type=parser.verbose_argument, default=None, nargs="?", const=LogLevel.INFO, metavar="lev",
        help="Verbosity level: 0 = error, 1 = warn, 2 = info, 3 = debug (default: 'info'; use numbers or names)")
    g_logging.add_argument("--log-file", type=str, metavar="file", default=None,
        help="Also write log output to this file, rotated daily (relative paths are placed in 'path'; crashes go to exceptions.log beside it)")
    # fmt: on
    g_logging.add_argument("--log-backups", type=parser.positive_int_argument, metavar="N", default=7, help="Number of rotated log files to keep (default: 7)")

    # common flags
    g_common.add_argument("--version", "-R", action="version", version=f"%(prog)s {VERSION}")
    g_common.add_argument("--help", "-h", action="help", help="Show this help message and exit")
    g_common.add_argument("--stacktrace", action="store_true", help=argparse.SUPPRESS)

    return parser


def parse_arguments() -> ConfigNamespace:
    parser = create_parser()
    args = parser.parse_args()
    return ConfigNamespace(**vars(args))


def lock_identity(target_dir: str) -> str:
    return hashlib.sha256(target_dir.encode("utf-8")).hexdigest()[:8]


class ProcessLock:
    """
    Exclusive, non-blocking advisory lock for one target directory.

    The lock lives in '<lock_base>/compress_logs/<identity>/process.lock', where the identity is derived
    from the target directory string, so runs against the same directory share one lock file. The lock is
    bound to the open file object and is released by the OS when the process terminates.
    """

    target_dir: str
    identity: str
    lock_dir: Path
    lock_file: Path
    _handle: Optional[TextIO]

    def __init__(self, target_dir: str, lock_base: str = LOCK_DIR_BASE, logger: Optional[Logger] = None) -> None:
        self.target_dir = target_dir
        self.identity = lock_identity(target_dir)
        self.lock_dir = Path(lock_base) / LOCK_DIR_NAME / self.identity
        self.lock_file = self.lock_dir / LOCK_FILE_NAME
        self._logger = logger
        self._handle = None

    def _ensure_lock_dir(self) -> None:
        if not self.lock_dir.is_dir() and self._logger is not None:
            self._logger.verbose(LogLevel.INFO, f"Creating directory: '{self.lock_dir}'")
        self.lock_dir.mkdir(parents=True, exist_ok=True)

    def acquire(self) -> "ProcessLock":
        self._ensure_lock_dir()
        handle = open(self.lock_file, "a")  # creates the lock file if absent, never truncates
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            handle.close()
            raise ConcurrencyError(f"A compress process is already running on {self.target_dir} (lock: {self.lock_file})")
        except OSError:
            handle.close()
            raise
        self._handle = handle
        return self

    @property
    def locked(self) -> bool:
        return self._handle is not None

    def release(self) -> None:
        if self._handle is not None:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
            self._handle.close()
            self._handle = None


def check_directory(path: str) -> Path:
    base = Path(path)
    if not base.exists():
        raise FileNotFoundError(f"Directory not found: {base}")
    if not base.is_dir():
        raise NotADirectoryError(f"Path is not a directory: {base}")
    return base


def read_snapshot(path: str) -> list[str]:
    """List the regular files of the directory once, sorted by name."""
    return sorted(entry.name for entry in Path(path).iterdir() if entry.is_file())


def parse_candidate_date(name: str, re_match: re.Match[str]) -> date:
    missing = [group for group in REQUIRED_GROUPS if re_match.groupdict().get(group) is None]
    if missing:
        raise PatternError(f"Pattern '{re_match.re.pattern}' is invalid: group(s) {', '.join(missing)} not captured for '{name}'")
    date_str = f"{re_match.group('year')}-{re_match.group('month')}-{re_match.group('day')}"
    try:
        return date(int(re_match.group("year")), int(re_match.group("month")), int(re_match.group("day")))
    except ValueError as e:
        raise PatternError(f"Invalid date '{date_str}' captured from '{name}' by pattern '{re_match.re.pattern}': {e}")


def match_file(name: str, pattern: re.Pattern[str]) -> Optional[FileCandidate]:
    re_match = pattern.search(name)
    if re_match is None:
        return None
    return FileCandidate(name, parse_candidate_date(name, re_match))


def match_files(names: list[str], pattern: re.Pattern[str], exclude: Optional[re.Pattern[str]] = None) -> list[FileCandidate]:
    candidates: list[FileCandidate] = []
    for name in names:
        if exclude is not None and exclude.search(name):  # already compressed files are never candidates
            continue
        candidate = match_file(name, pattern)
        if candidate is not None:
            candidates.append(candidate)
    return candidates


def match_compressed_files(names: list[str], pattern: re.Pattern[str]) -> list[CompressedFileRecord]:
    records: list[CompressedFileRecord] = []
    for name in names:
        candidate = match_file(name, pattern)
        if candidate is not None:
            records.append(CompressedFileRecord(candidate.name, candidate.date))
    return records


def produced_records(compressed: list[FileCandidate], pattern: re.Pattern[str]) -> list[CompressedFileRecord]:
    """Records for the archives written in this run, dated like their source files."""
    names = (candidate.name + COMPRESSED_EXTENSION for candidate in compressed)
    return [CompressedFileRecord(name, candidate.date) for name, candidate in zip(names, compressed) if pattern.search(name)]


@dataclass
class SelectionResult:
    decisions: list[SelectionDecision]
    compress: list[FileCandidate] = field(default_factory=list)
    skip: list[FileCandidate] = field(default_factory=list)


class SelectionLogic:
    _candidates: list[FileCandidate]
    _snapshot: set[str]
    _args: ConfigNamespace
    _logger: Logger

    def __init__(self, candidates: list[FileCandidate], snapshot: list[str], args: ConfigNamespace, logger: Logger) -> None:
        self._candidates = candidates
        self._snapshot = set(snapshot)
        self._args = args
        self._logger = logger

    def _has_compressed_counterpart(self, candidate: FileCandidate) -> bool:
        return candidate.name + COMPRESSED_EXTENSION in self._snapshot

    def _decide(self, candidate: FileCandidate, max_date: date) -> SelectionDecision:
        today: date = self._args.today
        if candidate.date >= today:
            reason = "Skipping: dated today" if candidate.date == today else "Skipping: dated in the future"
            return SelectionDecision(candidate, True, reason)
        if candidate.date == max_date:
            return SelectionDecision(candidate, True, "Skipping: most recent file")
        if self._has_compressed_counterpart(candidate):
            return SelectionDecision(candidate, True, f"Skipping: already compressed ({candidate.name}{COMPRESSED_EXTENSION} exists)")
        return SelectionDecision(candidate, False, "Compressing")

    def process_selection(self) -> SelectionResult:
        if not self._candidates:
            raise NothingToDoError(f"No files found to compress in '{self._args.path}' using pattern '{self._args.file_pattern}'", LogLevel.WARN)
        if len(self._candidates) == 1:
            raise NothingToDoError(f"Only one file found ('{self._candidates[0].name}'), nothing to rotate", LogLevel.INFO)

        max_date = max(candidate.date for candidate in self._candidates)
        self._logger.verbose(LogLevel.DEBUG, f"Today: {self._args.today}, most recent file date: {max_date}")

        result = SelectionResult(decisions=[])
        for candidate in self._candidates:
            decision = self._decide(candidate, max_date)
            self._logger.add_decision(LogLevel.INFO, candidate.name, decision.reason, debug=f"date: {candidate.date}")
            result.decisions.append(decision)
            (result.skip if decision.skip else result.compress).append(candidate)

        if not len(self._candidates) == len(result.compress) + len(result.skip):
            raise RuntimeError(f"File count mismatch (all: {len(self._candidates)}, compress: {len(result.compress)}, skip: {len(result.skip)})")

        return result

    def process_retention(self, records: list[CompressedFileRecord], decisions: list[SelectionDecision]) -> list[CompressedFileRecord]:
        """Return the compressed files exceeding the retention count, oldest first."""
        keep_files: int = self._args.keep_files
        skipped_dates = {decision.candidate.date for decision in decisions if decision.skip}

        counted: list[CompressedFileRecord] = []
        for record in records:
            if record.date in skipped_dates:
                self._logger.add_decision(LogLevel.DEBUG, record.name, "Retention: not counted, source file of this date was skipped", debug=f"date: {record.date}")
            else:
                counted.append(record)

        if len(counted) <= keep_files:
            self._logger.verbose(LogLevel.DEBUG, f"Retention: {len(counted)} compressed files within limit of {keep_files}")
            return []

        ordered = sorted(counted, key=lambda record: record.date)  # stable, equal dates keep snapshot order
        prune = ordered[: len(ordered) - keep_files]
        for index, record in enumerate(reversed(ordered[len(prune) :]), start=1):
            self._logger.add_decision(LogLevel.INFO, record.name, f"Keeping compressed {index:02d}/{keep_files:02d}", debug=f"date: {record.date}")
        for record in prune:
            self._logger.add_decision(LogLevel.INFO, record.name, f"Pruning: more than {keep_files:02d} compressed files", debug=f"date: {record.date}")
        return prune


def run_compression(file: Path, args: ConfigNamespace, logger: Logger) -> bool:
    if args.dry_run:
        logger.verbose(LogLevel.INFO, f"DRY-RUN COMPRESS: {file.name}")
        return True
    logger.verbose(LogLevel.INFO, f"COMPRESSING: {file.name}")
    try:
        completed = subprocess.run([*COMPRESSOR_COMMAND, str(file)], capture_output=True, text=True, check=False)
    except OSError as e:  # Catch start error of the compressor, print it, and continue
        logger.verbose(LogLevel.ERROR, f"Failed to compress file: '{file}': {e}")
        return False
    if completed.returncode != 0:
        status = f"killed by signal {-completed.returncode}" if completed.returncode < 0 else f"exit status {completed.returncode}"
        logger.verbose(LogLevel.ERROR, f"Failed to compress file: '{file}' ({status})")
        logger.verbose(LogLevel.ERROR, f"stderr: {(completed.stderr or '').strip()}")
        return False
    return True


def run_deletion(file: Path, args: ConfigNamespace, logger: Logger) -> bool:
    if args.dry_run:
        logger.verbose(LogLevel.INFO, f"DRY-RUN DELETE: {file.name}")  # Just simulate deletion
        return True
    logger.verbose(LogLevel.INFO, f"DELETING: {file.name}")
    try:
        file.unlink()
    except OSError as e:  # Catch deletion error, print it, and continue
        logger.verbose(LogLevel.WARN, f"Error while deleting file '{file.name}': {e}")
        return False
    return True


def write_exception_log(exception: Exception, exception_log: Path, prefix: str) -> None:
    try:
        with open(exception_log, "a", encoding="utf-8") as fh:
            fh.write(f"{datetime.now().isoformat(timespec='seconds')} [{prefix}] {exception}\n")
            traceback.print_exception(type(exception), exception, exception.__traceback__, file=fh)
    except OSError as e:
        print(f"[{LogLevel.WARN.name}] Could not write exception log '{exception_log}': {e}", file=sys.stderr)


def handle_exception(exception: Exception, exit_code: int, stacktrace: bool, prefix: str = "", exception_log: Optional[Path] = None) -> None:
    if stacktrace:
        traceback.print_exc()
    print(f"[{prefix or LogLevel.ERROR.name}] {exception}", file=sys.stderr)
    if exception_log is not None:
        write_exception_log(exception, exception_log, prefix or LogLevel.ERROR.name)
    sys.exit(exit_code)


def main() -> None:
    args: Optional[ConfigNamespace] = None
    logger: Optional[Logger] = None
    lock: Optional[ProcessLock] = None

    def stacktrace() -> bool:
        return args.stacktrace if args is not None else True

    def exception_log() -> Optional[Path]:
        if args is None or args.log_file is None or not Path(args.log_file).parent.is_dir():
            return None
        return Path(args.log_file).parent / EXCEPTION_LOG_NAME

    try:
        args = parse_arguments()
        base = check_directory(args.path)

        logger = Logger(args)
        logger.verbose(LogLevel.DEBUG, f"Parsed arguments: {args}")

        lock = ProcessLock(args.path, args.lock_base, logger).acquire()  # held until the process exits
        logger.verbose(LogLevel.DEBUG, f"Lock acquired: {lock.lock_file}")

        snapshot = read_snapshot(args.path)
        candidates = match_files(snapshot, args.pattern_compiled, exclude=args.compressed_compiled)
        logger.verbose(LogLevel.INFO, f"Found {len(candidates)} files using pattern '{args.file_pattern}'")
        logger.verbose(LogLevel.DEBUG, "Files found: " + ", ".join(f'"{c.name}"' for c in candidates))

        records: list[CompressedFileRecord] = []
        if args.keep_files:
            records = match_compressed_files(snapshot, args.compressed_compiled)
            logger.verbose(LogLevel.INFO, f"Found {len(records)} compressed files using pattern '{args.compressed_pattern_full}'")

        selection_logic = SelectionLogic(candidates, snapshot, args, logger)
        selection = selection_logic.process_selection()
        logger.print_decisions()

        compressed: list[FileCandidate] = []
        failed: list[FileCandidate] = []
        for candidate in selection.compress:
            (compressed if run_compression(base / candidate.name, args, logger) else failed).append(candidate)

        deletions: list[CompressedFileRecord] = []
        deleted = 0
        if args.keep_files:
            records += produced_records(compressed, args.compressed_compiled)
            deletions = selection_logic.process_retention(records, selection.decisions)
            logger.print_decisions()
            deleted = sum(1 for record in deletions if run_deletion(base / record.name, args, logger))

        totals: list[tuple[str, str]] = [
            ("found", f"{len(candidates):03d}"),
            ("skipped", f"{len(selection.skip):03d}"),
            ("would compress" if args.dry_run else "compressed", f"{len(compressed):03d}"),
            ("failed", f"{len(failed):03d}"),
        ]
        if args.keep_files:
            totals.append(("would delete" if args.dry_run else "deleted", f"{deleted:03d}/{len(deletions):03d}"))
        width = max(len(label) for label, _ in totals) + 2
        for label, value in totals:
            logger.verbose(LogLevel.INFO, f"Total files {label + ':':<{width}}{value}")

    except NothingToDoError as e:
        if logger is not None:
            logger.verbose(e.level, str(e))
    except ConcurrencyError as e:
        if logger is None:
            handle_exception(e, EXIT_ALREADY_RUNNING, stacktrace(), prefix=LogLevel.WARN.name)
        else:
            logger.verbose(LogLevel.WARN, str(e))  # also reaches the log file
            sys.exit(EXIT_ALREADY_RUNNING)
    except OSError as e:
        handle_exception(e, EXIT_FAILURE, stacktrace(), exception_log=exception_log())
    except ValueError as e:
        handle_exception(e, EXIT_FAILURE, stacktrace(), exception_log=exception_log())
    except Exception as e:
        handle_exception(e, EXIT_FAILURE, stacktrace(), prefix="UNEXPECTED ERROR", exception_log=exception_log())
    finally:
        if logger is not None:
            logger.close()


if __name__ == "__main__":
    main()
