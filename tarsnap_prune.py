#
# tarsnap-prune
#
# A small CLI tool to thin out old Tarsnap archives: keep everything recent, one archive per week
# for the last two years and one archive per month before that.
#
# Copyright (c) 2025-2026 Thomas Kuhlmann
#
# Licensed under the MIT License. See LICENSE file in the project root for license information.
#

import argparse
import io
import re
import subprocess
import sys
import tempfile
import threading
import traceback
from collections.abc import Iterable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum, IntEnum, auto
from pathlib import Path
from types import SimpleNamespace
from typing import NoReturn, Optional, TextIO, no_type_check


VERSION: str = "1.0.0"

TIMESTAMP_FORMAT: str = "%Y-%m-%d %H:%M:%S"

# Tarsnap does not permit concurrent operations on one account
DEFAULT_CONCURRENCY: int = 1

DEFAULT_BATCH_SIZE: int = 100

ARCHIVE_NOT_FOUND_MARKER: str = "Archive does not exist"

LISTING_BACKUP_PREFIX: str = "tarsnap-old-archives-"

# Stable prefixes of the outcome lines on stdout
REPORT_KEEP: str = "keep"
REPORT_DISCARD: str = "discard"
REPORT_GONE: str = "gone   "
REPORT_DELETED: str = "deleted"


class IntegrityCheckFailedError(Exception):
    pass


class MalformedLineError(ValueError):
    pass


class ListingFailedError(OSError):
    pass


class ArchiveNotFoundError(Exception):
    pass


class DeletionFailedError(Exception):
    pass


class DeletionCancelledError(Exception):
    pass


class ConfigNamespace(SimpleNamespace):
    pass


@dataclass(frozen=True)
class ArchiveRecord:
    name: str
    timestamp: datetime

    def __str__(self) -> str:
        return f"{self.name}\t{self.timestamp.strftime(TIMESTAMP_FORMAT)}"


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


class Logger:
    _args: ConfigNamespace
    _lock: threading.Lock

    def __init__(self, args: ConfigNamespace) -> None:
        self._args = args
        self._lock = threading.Lock()  # worker threads report concurrently

    def has_log_level(self, level: LogLevel) -> bool:
        return level <= int(self._args.verbose)

    def _raw_verbose(self, level: LogLevel, message: str, file: Optional[TextIO] = None, prefix: str = "") -> None:
        with self._lock:
            print(f"[{prefix or LogLevel(level).name}] {message}", file=file or sys.stderr, flush=True)

    def verbose(self, level: LogLevel, message: str, file: Optional[TextIO] = None, prefix: str = "") -> None:
        if self.has_log_level(level):
            self._raw_verbose(level, message, file, prefix)

    def echo(self, message: str) -> None:
        with self._lock:
            print(message, flush=True)

    def report(self, outcome: str, subject: object) -> None:
        """Print one outcome line (keep, discard, gone, deleted); never filtered by verbosity."""
        self.echo(f"{outcome} {subject}")


class ModernHelpFormatter(argparse.HelpFormatter):
    @no_type_check
    def __init__(self, *a, **kw) -> None:  # noqa: ANN002, ANN003
        super().__init__(*a, max_help_position=34, width=160, **kw)

    @no_type_check
    def start_section(self, heading) -> None:  # noqa: ANN001
        super().start_section(heading.capitalize())


def anchor_archive_regex(regex: str) -> str:
    # Without explicit anchors a pattern may match anywhere in the name
    prefix = "" if regex.startswith("^") else ".*"
    suffix = "" if regex.endswith("$") else ".*"
    return f"{prefix}(?:{regex}){suffix}"


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
        sys.exit(2)

    # Argument type helpers
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
            return LogLevel.from_name_or_number(value)
        except ValueError:
            raise argparse.ArgumentTypeError(f"Invalid verbose value '{value}' (use ERROR, WARN, INFO, DEBUG or 0, 1, 2, 3)")

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
        # Normalize option strings (--dry-run and --no-dry-run share one action)
        alias = {opt: action.option_strings[0] for action in self._actions for opt in action.option_strings}
        seen = set()

        for tok in raw_args:
            if not tok.startswith("-"):
                continue

            # Extract option (handles -b3, -b=3, --batch-size=5)
            opt = tok.split("=", 1)[0]

            # Handle -b3 → -b
            if len(opt) > 2 and opt.startswith("-") and not opt.startswith("--"):
                opt = opt[:2]

            key = alias.get(opt, opt)

            if key in seen:
                self.add_error(f"Duplicate flag: {key}")
            seen.add(key)

    def _compile_regex(self, regex: str) -> Optional[re.Pattern[str]]:
        try:
            return re.compile(anchor_archive_regex(regex), re.UNICODE)
        except re.error:
            self.add_error(f"Invalid regular expression : {regex}")
            return None

    @no_type_check
    def _validate_arguments(self, ns) -> None:  # noqa: ANN001
        # Default verbosity, if none given
        if ns.verbose is None:
            ns.verbose = LogLevel.INFO

        if not ns.archive_regex:
            self.add_error("--archive-regex must not be empty")
        else:
            ns.archive_regex_compiled = self._compile_regex(ns.archive_regex)

        if ns.file is not None and not Path(ns.file).is_file():
            self.add_error(f"Archive list file not found: {ns.file}")

        if ns.already_deleted_file is not None and not Path(ns.already_deleted_file).is_file():
            self.add_error(f"Already deleted file not found: {ns.already_deleted_file}")

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
        description=f"tarsnap-prune {VERSION}\n\nThin out old Tarsnap archives: all from the last 2 months, one per week up to 2 years, one per 30 days before",
        usage=("tarsnap-prune --archive-regex regex [options]\n\nExample:\n  tarsnap-prune -r '^host1-' --already-deleted-file deleted.txt --no-dry-run"),
        epilog="Use with caution!! This tool deletes archives when --no-dry-run is set.",
        formatter_class=ModernHelpFormatter,
        add_help=False,
    )

    g_main = parser.add_argument_group("Main arguments")
    g_input = parser.add_argument_group("Input arguments")
    g_behavior = parser.add_argument_group("Behavior arguments")
    g_common = parser.add_argument_group("Common arguments")

    # fmt: off
    g_main.add_argument("--archive-regex", "-r", type=str, required=True, metavar="regex",
        help="Regular expression archive names must match (padded with '.*' unless it starts with '^' / ends with '$')")
    # fmt: on

    g_input.add_argument("--file", "-f", type=str, default=None, metavar="path", help="Load the archive list ('name<TAB>YYYY-MM-DD HH:MM:SS') from file instead of running tarsnap")
    g_input.add_argument("--already-deleted-file", "-a", type=str, default=None, metavar="path", help="File with names of already deleted archives (one per line)")
    g_input.add_argument("--tarsnap", type=str, default="tarsnap", metavar="exe", help="Tarsnap executable (default: tarsnap)")

    # fmt: off
    g_behavior.add_argument("--dry-run", "-X", action=argparse.BooleanOptionalAction, default=True,
        help="Only print keep/discard decisions (default); use --no-dry-run to delete archives")
    g_behavior.add_argument("--batch-size", "-b", type=parser.positive_int_argument, default=DEFAULT_BATCH_SIZE, metavar="N",
        help=f"Number of archives deleted with one tarsnap call (default: {DEFAULT_BATCH_SIZE})")
    g_behavior.add_argument("--concurrency", "-c", type=parser.positive_int_argument, default=DEFAULT_CONCURRENCY, metavar="N",
        help=f"Number of delete calls in flight (default: {DEFAULT_CONCURRENCY}; tarsnap itself allows only 1)")
    g_behavior.add_argument("--verbose", "-V", "-v", type=parser.verbose_argument, default=None, nargs="?", const=LogLevel.INFO, metavar="lev",
        help="Verbosity level: 0 = error, 1 = warn, 2 = info, 3 = debug (default: 'info'; use numbers or names)")
    # fmt: on

    # common flags
    g_common.add_argument("--version", "-R", action="version", version=f"%(prog)s {VERSION}")
    g_common.add_argument("--help", "-H", action="help", help="Show this help message and exit")
    g_common.add_argument("--stacktrace", action="store_true", help=argparse.SUPPRESS)

    return parser


def parse_arguments() -> ConfigNamespace:
    parser = create_parser()
    args = parser.parse_args()
    return ConfigNamespace(**vars(args))


def read_catalog(stream: Iterable[str]) -> list[ArchiveRecord]:
    records: list[ArchiveRecord] = []
    for raw_line in stream:
        line = raw_line.rstrip("\r\n")
        count = line.count("\t")
        if count != 1:
            raise MalformedLineError(f"Wrong number of tabs in line: want 1 got {count}: {line!r}")
        name, stamp = line.split("\t", 1)
        try:
            timestamp = datetime.strptime(stamp, TIMESTAMP_FORMAT)
        except ValueError as e:
            raise MalformedLineError(f"Invalid timestamp in line: {line!r} ({e})") from e
        records.append(ArchiveRecord(name, timestamp))

    # sort by time (oldest first), stable for equal timestamps
    return sorted(records, key=lambda record: record.timestamp)


def check_unique_names(records: Iterable[ArchiveRecord]) -> None:
    seen: set[str] = set()
    for record in records:
        if record.name in seen:
            raise IntegrityCheckFailedError(f"Duplicate archive name in archive list: '{record.name}'")
        seen.add(record.name)


def filter_archives(records: Iterable[ArchiveRecord], pattern: re.Pattern[str]) -> list[ArchiveRecord]:
    return [record for record in records if pattern.fullmatch(record.name)]


def read_already_deleted(path: Path) -> frozenset[str]:
    return frozenset(line.strip() for line in path.read_text(encoding="utf-8").splitlines() if line.strip())


def calendar_day_utc(year: int, month: int, day: int) -> datetime:
    # Out-of-range months and days roll over (e.g. Feb 30 -> Mar 2)
    year += (month - 1) // 12
    month = (month - 1) % 12 + 1
    return datetime(year, month, 1) + timedelta(days=day - 1)


class RetentionTier(Enum):
    RECENT = auto()
    MID = auto()
    OLD = auto()


TIER_WINDOWS: dict[RetentionTier, timedelta] = {
    RetentionTier.MID: timedelta(days=7),
    RetentionTier.OLD: timedelta(days=30),
}


@dataclass(frozen=True)
class RetentionThresholds:
    """Tier boundaries as naive UTC datetimes at midnight, computed once per run."""

    two_years_ago: datetime
    two_months_ago: datetime

    @classmethod
    def from_now(cls, now: Optional[datetime] = None) -> "RetentionThresholds":
        now = now or datetime.now(timezone.utc)
        if now.tzinfo is not None:
            now = now.astimezone(timezone.utc)
        return cls(
            two_years_ago=calendar_day_utc(now.year - 2, now.month, now.day),
            two_months_ago=calendar_day_utc(now.year, now.month - 2, now.day),
        )

    def tier(self, timestamp: datetime) -> RetentionTier:
        if timestamp <= self.two_years_ago:
            return RetentionTier.OLD
        if timestamp <= self.two_months_ago:
            return RetentionTier.MID
        return RetentionTier.RECENT

    def window_tier(self, anchor: datetime) -> RetentionTier:
        """Tier whose window an anchor opens: the window must end before that tier's threshold.

        An anchor close to a threshold falls back to the next shorter window (or none), so a
        window never reaches into a younger tier.
        """
        if anchor + TIER_WINDOWS[RetentionTier.OLD] < self.two_years_ago:
            return RetentionTier.OLD
        if anchor + TIER_WINDOWS[RetentionTier.MID] < self.two_months_ago:
            return RetentionTier.MID
        return RetentionTier.RECENT

    def window_end(self, anchor: datetime) -> Optional[datetime]:
        window = TIER_WINDOWS.get(self.window_tier(anchor))
        return anchor + window if window is not None else None


class RetentionDecision(Enum):
    KEEP = "keep"
    DISCARD = "discard"
    GONE = "gone"


class SelectorState(Enum):
    SEEKING_ANCHOR = auto()
    IN_WINDOW = auto()


@dataclass
class RetentionsResult:
    keep: list[ArchiveRecord]
    discard: list[ArchiveRecord]
    gone: list[ArchiveRecord]
    decisions: dict[str, RetentionDecision]


class RetentionLogic:
    _matches: list[ArchiveRecord]
    _already_deleted: frozenset[str]
    _thresholds: RetentionThresholds
    _logger: Logger
    _keep: list[ArchiveRecord]
    _discard: list[ArchiveRecord]
    _gone: list[ArchiveRecord]
    _decisions: dict[str, RetentionDecision]

    def __init__(self, matches: list[ArchiveRecord], already_deleted: frozenset[str], thresholds: RetentionThresholds, logger: Logger) -> None:
        self._matches = matches
        self._already_deleted = already_deleted
        self._thresholds = thresholds
        self._logger = logger
        self._keep = []
        self._discard = []
        self._gone = []
        self._decisions = {}

    def _decide(self, record: ArchiveRecord, decision: RetentionDecision) -> None:
        self._decisions[record.name] = decision
        if decision is RetentionDecision.KEEP:
            self._keep.append(record)
            self._logger.report(REPORT_KEEP, record)
        elif decision is RetentionDecision.DISCARD:
            self._discard.append(record)
            self._logger.report(REPORT_DISCARD, record)
        else:
            self._gone.append(record)
            self._logger.report(REPORT_GONE, record.name)

    def process_retention_logic(self) -> RetentionsResult:
        # Matches are sorted oldest first; the cursor advances on every step except leaving a window
        state = SelectorState.SEEKING_ANCHOR
        window_end: Optional[datetime] = None
        cursor = 0
        while cursor < len(self._matches):
            record = self._matches[cursor]
            if record.name in self._already_deleted:
                self._decide(record, RetentionDecision.GONE)
                cursor += 1
            elif state is SelectorState.SEEKING_ANCHOR:
                self._decide(record, RetentionDecision.KEEP)
                window_end = self._thresholds.window_end(record.timestamp)
                if window_end is not None:
                    state = SelectorState.IN_WINDOW
                    self._logger.verbose(LogLevel.DEBUG, f"Anchor {record.name}: {self._thresholds.window_tier(record.timestamp).name.lower()} window until {window_end}")
                cursor += 1
            elif window_end is not None and record.timestamp < window_end:
                self._decide(record, RetentionDecision.DISCARD)
                cursor += 1
            else:
                # Record at or after window end becomes the next anchor candidate
                state = SelectorState.SEEKING_ANCHOR

        # Simple integrity checks
        if not len(self._matches) == len(self._keep) + len(self._discard) + len(self._gone):
            raise IntegrityCheckFailedError(
                f"Archive count mismatch: some archives are neither kept, discarded nor gone (all: {len(self._matches)}, keep: {len(self._keep)}, discard: {len(self._discard)}, gone: {len(self._gone)})!!"
            )
        if any(record.name in self._already_deleted for record in self._discard):
            raise IntegrityCheckFailedError("Already deleted archive selected for deletion!!")

        return RetentionsResult(self._keep, self._discard, self._gone, self._decisions)


class TarsnapBackend:
    executable: str
    poll_interval: float
    _logger: Logger

    def __init__(self, executable: str, logger: Logger, poll_interval: float = 0.2) -> None:
        self.executable = executable
        self.poll_interval = poll_interval
        self._logger = logger

    def list_archives(self) -> str:
        cmd = [self.executable, "--list-archives", "-v"]
        self._logger.verbose(LogLevel.DEBUG, f"Running: {' '.join(cmd)}")
        result = subprocess.run(cmd, capture_output=True, text=True)
        if result.returncode != 0:
            raise ListingFailedError(f"Listing archives failed (exit status {result.returncode}): {result.stderr.strip()}")
        return result.stdout

    def delete(self, names: list[str], cancel_event: threading.Event) -> None:
        if not names:
            raise ValueError("No archive names given for deletion")
        cmd = [self.executable, "-d"]
        for name in names:
            cmd.extend(["-f", name])
        self._logger.verbose(LogLevel.DEBUG, f"Running: {' '.join(cmd)}")

        process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        while True:
            try:
                _, stderr = process.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if cancel_event.is_set():
                    process.kill()
                    process.communicate()
                    raise DeletionCancelledError(f"Deletion of {len(names)} archive(s) aborted")

        if process.returncode != 0:
            if ARCHIVE_NOT_FOUND_MARKER in stderr:
                raise ArchiveNotFoundError(stderr.strip())
            raise DeletionFailedError(f"Deleting archives failed (exit status {process.returncode}): {stderr.strip()}")
        if stderr:
            sys.stderr.write(stderr)


class DeletionOutcome(Enum):
    DELETED = "deleted"
    ALREADY_GONE = "already gone"
    FATAL = "fatal"


@dataclass
class BatchResult:
    outcomes: dict[str, DeletionOutcome] = field(default_factory=dict)
    error: Optional[Exception] = None
    cancelled: bool = False


@dataclass
class ExecutionResult:
    outcomes: dict[str, DeletionOutcome] = field(default_factory=dict)
    error: Optional[Exception] = None

    def names(self, outcome: DeletionOutcome) -> list[str]:
        return [name for name, value in self.outcomes.items() if value is outcome]

    @property
    def succeeded(self) -> bool:
        return self.error is None


class DeletionExecutor:
    _backend: TarsnapBackend
    _already_deleted: frozenset[str]
    _batch_size: int
    _concurrency: int
    _logger: Logger
    _cancel_event: threading.Event

    def __init__(self, backend: TarsnapBackend, already_deleted: frozenset[str], batch_size: int, concurrency: int, logger: Logger) -> None:
        if batch_size < 1 or concurrency < 1:
            raise ValueError(f"Batch size and concurrency must be > 0 (batch size: {batch_size}, concurrency: {concurrency})")
        self._backend = backend
        self._already_deleted = already_deleted
        self._batch_size = batch_size
        self._concurrency = concurrency
        self._logger = logger
        self._cancel_event = threading.Event()

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    def form_batches(self, discards: Iterable[ArchiveRecord]) -> list[list[str]]:
        batches: list[list[str]] = []
        batch: list[str] = []
        for record in discards:
            if record.name in self._already_deleted:
                self._logger.report(REPORT_GONE, record.name)
                continue
            batch.append(record.name)
            if len(batch) == self._batch_size:
                batches.append(batch)
                batch = []
        if batch:
            batches.append(batch)
        return batches

    def _resolve(self, result: BatchResult, name: str, outcome: DeletionOutcome) -> None:
        result.outcomes[name] = outcome
        self._logger.report(REPORT_DELETED if outcome is DeletionOutcome.DELETED else REPORT_GONE, name)

    def _delete_batch(self, batch: list[str]) -> BatchResult:
        result = BatchResult()
        if self._cancel_event.is_set():
            result.cancelled = True
            return result

        request = batch
        try:
            try:
                self._backend.delete(batch, self._cancel_event)
            except ArchiveNotFoundError:
                self._logger.verbose(LogLevel.WARN, f"Batch of {len(batch)} archive(s) contains already deleted archives, deleting one by one")
                for name in batch:
                    if self._cancel_event.is_set():
                        result.cancelled = True
                        return result
                    request = [name]
                    try:
                        self._backend.delete(request, self._cancel_event)
                    except ArchiveNotFoundError:
                        self._resolve(result, name, DeletionOutcome.ALREADY_GONE)
                    else:
                        self._resolve(result, name, DeletionOutcome.DELETED)
            else:
                for name in batch:
                    self._resolve(result, name, DeletionOutcome.DELETED)
        except DeletionCancelledError:
            result.cancelled = True
        except (DeletionFailedError, OSError) as e:
            # Stop all work not started yet, before the next queued batch can pick it up
            self._cancel_event.set()
            result.error = e
            for name in request:
                result.outcomes[name] = DeletionOutcome.FATAL
        return result

    def run(self, discards: Iterable[ArchiveRecord]) -> ExecutionResult:
        execution = ExecutionResult()
        batches = self.form_batches(discards)
        self._logger.verbose(LogLevel.DEBUG, f"Formed {len(batches)} batch(es) of at most {self._batch_size} archive(s)")
        if not batches:
            return execution

        with ThreadPoolExecutor(max_workers=self._concurrency, thread_name_prefix="tarsnap-delete") as pool:
            futures = [pool.submit(self._delete_batch, batch) for batch in batches]
            for future in as_completed(futures):
                if future.cancelled():
                    continue
                try:
                    batch_result = future.result()
                except Exception:
                    self._cancel_event.set()
                    for pending in futures:
                        pending.cancel()
                    raise
                execution.outcomes.update(batch_result.outcomes)
                if batch_result.error is not None:
                    if execution.error is None:
                        execution.error = batch_result.error
                    for pending in futures:
                        pending.cancel()

        return execution


def write_listing_backup(listing: str, logger: Logger) -> Optional[Path]:
    try:
        with tempfile.NamedTemporaryFile("w", prefix=LISTING_BACKUP_PREFIX, delete=False, encoding="utf-8") as tmp:
            tmp.write(listing)
    except OSError as e:  # Backup of the listing is for debugging only
        logger.verbose(LogLevel.WARN, f"Could not write archive output backup: {e}")
        return None
    logger.echo(f"wrote archive output to {tmp.name}")
    return Path(tmp.name)


def load_catalog(args: ConfigNamespace, backend: TarsnapBackend, logger: Logger) -> list[ArchiveRecord]:
    if args.file:
        with open(args.file, encoding="utf-8") as stream:
            return read_catalog(stream)
    listing = backend.list_archives()
    write_listing_backup(listing, logger)
    return read_catalog(io.StringIO(listing))


def handle_exception(exception: Exception, exit_code: int, stacktrace: bool, prefix: str = "") -> None:
    if stacktrace:
        traceback.print_exc()
    print(f"[{prefix or LogLevel.ERROR.name}] {exception}", file=sys.stderr)
    sys.exit(exit_code)


def main() -> None:
    args: Optional[ConfigNamespace] = None

    try:
        args = parse_arguments()

        logger = Logger(args)

        logger.verbose(LogLevel.DEBUG, f"Parsed arguments: {args}")

        if args.concurrency > DEFAULT_CONCURRENCY:
            logger.verbose(LogLevel.WARN, f"Concurrency {args.concurrency} > {DEFAULT_CONCURRENCY}: tarsnap rejects concurrent operations on one account")

        already_deleted: frozenset[str] = frozenset()
        if args.already_deleted_file:
            already_deleted = read_already_deleted(Path(args.already_deleted_file))
            logger.verbose(LogLevel.INFO, f"Loaded {len(already_deleted)} already deleted archive names")

        backend = TarsnapBackend(args.tarsnap, logger)

        records = load_catalog(args, backend, logger)
        check_unique_names(records)
        matches = filter_archives(records, args.archive_regex_compiled)
        logger.verbose(LogLevel.INFO, f"Found {len(records)} archives, {len(matches)} matching regex '{args.archive_regex}'")
        if not matches:
            logger.verbose(LogLevel.WARN, f"No archives matching regex '{args.archive_regex}'")

        thresholds = RetentionThresholds.from_now()
        logger.verbose(LogLevel.DEBUG, f"Monthly retention before {thresholds.two_years_ago}, weekly retention before {thresholds.two_months_ago}")

        retentions_result = RetentionLogic(matches, already_deleted, thresholds, logger).process_retention_logic()

        logger.verbose(LogLevel.INFO, f"Total archives keep:    {len(retentions_result.keep):03d}")
        logger.verbose(LogLevel.INFO, f"Total archives discard: {len(retentions_result.discard):03d}")
        logger.verbose(LogLevel.INFO, f"Total archives gone:    {len(retentions_result.gone):03d}")

        if args.dry_run:
            logger.verbose(LogLevel.INFO, "Dry run: no archives deleted (use --no-dry-run to delete)")
            return

        executor = DeletionExecutor(backend, already_deleted, args.batch_size, args.concurrency, logger)
        execution = executor.run(retentions_result.discard)

        logger.verbose(LogLevel.INFO, f"Total archives deleted:      {len(execution.names(DeletionOutcome.DELETED)):03d}")
        logger.verbose(LogLevel.INFO, f"Total archives already gone: {len(execution.names(DeletionOutcome.ALREADY_GONE)):03d}")

        if execution.error is not None:
            raise execution.error

    except OSError as e:
        handle_exception(e, 1, args.stacktrace if args is not None else True)
    except ValueError as e:
        handle_exception(e, 2, args.stacktrace if args is not None else True)
    except DeletionFailedError as e:
        handle_exception(e, 6, args.stacktrace if args is not None else True)
    except IntegrityCheckFailedError as e:
        handle_exception(e, 7, args.stacktrace if args is not None else True)
    except Exception as e:
        handle_exception(e, 9, args.stacktrace if args is not None else True, prefix="UNEXPECTED ERROR")


if __name__ == "__main__":
    main()
