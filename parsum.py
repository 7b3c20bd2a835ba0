#!/usr/bin/env python3
"""
parsum.py - Parallel Checksum Tool

Prints or checks file digests in the two long-standing checksum manifest
layouts, the digest-first "plain" layout used by sha256sum and friends and the
BSD "tagged" layout (``SHA256 (name) = hex``).

Features:
- Plain and tagged (--tag) manifest lines with file name escaping
- LF, CRLF-tolerant (--crlf) and NUL-terminated (--zero) manifests
- UTF-8/UTF-16/UTF-32 manifest encoding detection
- Recursive traversal (--recursive) with symlink loop detection
- Concurrent hashing and verification with a worker pool (--jobs)

Usage:
    parsum.py [OPTION]... [PATH]...

Examples:
    parsum.py file.iso                             # Print checksum of one file
    parsum.py -r --jobs 8 /data > data.sha256      # Hash a tree with 8 workers
    parsum.py --tag --algorithm sha512 *.tar.gz    # BSD-style SHA512 lines
    parsum.py -c data.sha256                       # Verify a manifest
    parsum.py -c --ignore-missing -q a.sha256 b.sha256
"""

import os
import io
import sys
import stat
import enum
import errno
import queue
import codecs
import hashlib
import logging
import argparse
import binascii
import itertools
import threading
import traceback
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, List, NamedTuple, Optional, Set, Tuple

import colorama

# Version information
MAJOR, MINOR, PATCH = 1, 0, 2

__version__ = f"{MAJOR}.{MINOR}.{PATCH}"

__author__ = "Dustin Darcy"

# Constants
PROG_NAME = 'parsum'
DEFAULT_ALGORITHM = 'sha256'
DEFAULT_CHUNK_SIZE = 64 * 1024
SUPPORTED_ALGORITHMS = ['md5', 'sha1', 'sha256', 'sha512']
STDIN_PLACEHOLDER = '-'
READDIR_BATCH_SIZE = 128
QUEUE_DEPTH_PER_JOB = 4

# A leading backslash marks an escaped name; '/' is accepted for old manifests
ESCAPE_MARKERS = ('\\', '/')

logger = logging.getLogger(PROG_NAME)


def is_windows():
    return os.name == 'nt'


class ErrorKind(enum.Enum):
    """Closed set of recoverable failure classes reported during a run."""

    BAD_LINE = 'bad-line'
    NOT_FOUND = 'not-found'
    IO = 'io'
    SYMLINK_LOOP = 'symlink-loop'
    NO_VALID_LINES = 'no-valid-lines'


class ChecksumError(Exception):
    """A reportable failure tied to a path and, for manifest lines, a line number.

    Nothing raised as a ChecksumError stops a run. Callers branch on ``kind``
    to decide which counter it lands in and whether to log it.
    """

    def __init__(self, kind: ErrorKind, path: str, reason: str,
                 line: Optional[int] = None, format_name: Optional[str] = None):
        if line is None:
            message = f"{path}: {reason}"
        else:
            message = f"{path}: {line}: {reason}"
        super().__init__(message)
        self.kind = kind
        self.path = path
        self.reason = reason
        self.line = line
        self.format_name = format_name
        self.message = message

    @classmethod
    def from_os_error(cls, exc: Exception, path: str) -> 'ChecksumError':
        """Convert an OSError, or the ValueError open() raises for a NUL in a path."""
        if isinstance(exc, FileNotFoundError):
            kind = ErrorKind.NOT_FOUND
        elif getattr(exc, 'errno', None) == errno.ELOOP:
            kind = ErrorKind.SYMLINK_LOOP
        else:
            kind = ErrorKind.IO
        reason = getattr(exc, 'strerror', None) or str(exc)
        return cls(kind, path, reason[:1].upper() + reason[1:])

    @classmethod
    def bad_line(cls, path: str, line: int, format_name: str) -> 'ChecksumError':
        return cls(ErrorKind.BAD_LINE, path,
                   f"improperly formatted {format_name} checksum line",
                   line=line, format_name=format_name)

    @classmethod
    def no_valid_lines(cls, path: str, format_name: str) -> 'ChecksumError':
        return cls(ErrorKind.NO_VALID_LINES, path,
                   f"no properly formatted {format_name} checksum lines found",
                   format_name=format_name)

    @classmethod
    def symlink_loop(cls, path: str) -> 'ChecksumError':
        return cls(ErrorKind.SYMLINK_LOOP, path, "Symlink loop detected")


class OptionsError(Exception):
    """Invalid option combination; fatal before any file is touched."""


class ManifestEntry(NamedTuple):
    arg_index: int
    name: str
    digest: bytes


class HashResult(NamedTuple):
    name: str
    digest: bytes


class CheckStatus(enum.Enum):
    """Per-entry verification outcome; the value is the printed status word."""

    VERIFIED = 'OK'
    MISMATCH = 'FAILED'
    UNREADABLE = 'FAILED open or read'
    SKIPPED = ''


class CheckResult(NamedTuple):
    arg_index: int
    name: str
    status: CheckStatus


class StdinClaim:
    """Single-use handle on the process standard input.

    The first caller of :meth:`claim` receives the live stream. Every later
    caller receives an empty stream, so a second reader of ``-`` can never
    take bytes meant for the first one.
    """

    def __init__(self, stream: Optional[BinaryIO] = None):
        self._stream = stream
        self._claimed = False
        self._lock = threading.Lock()

    @property
    def claimed(self) -> bool:
        with self._lock:
            return self._claimed

    def claim(self) -> BinaryIO:
        with self._lock:
            if self._claimed:
                return io.BytesIO()
            self._claimed = True
        if self._stream is not None:
            return self._stream
        return sys.stdin.buffer


@contextmanager
def open_input(path: str, stdin: StdinClaim) -> Iterator[BinaryIO]:
    """Open ``path`` for binary reading; ``-`` claims standard input."""
    if path == STDIN_PLACEHOLDER:
        # stdin is never closed here, other parts of the process own it
        yield stdin.claim()
        return
    with open(path, 'rb') as f:
        yield f


class HashCalculator:
    """Reusable streaming digest owned by a single worker."""

    def __init__(self, algorithm=DEFAULT_ALGORITHM, chunk_size=DEFAULT_CHUNK_SIZE):
        self.algorithm = algorithm.lower()
        self.chunk_size = chunk_size
        try:
            self._hasher = hashlib.new(self.algorithm)
        except ValueError:
            raise ValueError(f"Unsupported hash algorithm: {self.algorithm}")

    @property
    def digest_size(self) -> int:
        return self._hasher.digest_size

    @property
    def tag_name(self) -> str:
        """Name written in tagged lines, e.g. ``SHA256``."""
        return self.algorithm.upper()

    def reset(self):
        self._hasher = hashlib.new(self.algorithm)

    def update(self, data: bytes):
        self._hasher.update(data)

    def finalize(self) -> bytes:
        return self._hasher.digest()

    def calculate_file_hash(self, path: str, stdin: StdinClaim) -> bytes:
        """Digest the full content of ``path``. OSError propagates to the caller."""
        with open_input(path, stdin) as f:
            self.reset()
            while True:
                chunk = f.read(self.chunk_size)
                if not chunk:
                    break
                self.update(chunk)
        return self.finalize()


def escape_name(name: str) -> Tuple[str, bool]:
    """Escape backslashes and newlines; report whether anything changed."""
    if '\\' not in name and '\n' not in name:
        return name, False
    return name.replace('\\', '\\\\').replace('\n', '\\n'), True


def unescape_name(name: str) -> str:
    """Reverse :func:`escape_name`.

    ``\\n`` becomes a newline, ``\\\\`` a backslash, any other escaped
    character stands for itself and a trailing lone backslash is kept.
    """
    chars = []
    escaping = False
    for ch in name:
        if escaping:
            escaping = False
            chars.append('\n' if ch == 'n' else ch)
        elif ch == '\\':
            escaping = True
        else:
            chars.append(ch)
    if escaping:
        chars.append('\\')
    return ''.join(chars)


def _decode_hex(text: str) -> Optional[bytes]:
    try:
        return binascii.unhexlify(text)
    except (binascii.Error, ValueError):
        return None


def _printable(byte: int) -> bool:
    return chr(byte).isprintable()


def detect_manifest_encoding(head: bytes) -> str:
    """Guess a manifest's text encoding from its first four bytes.

    BOMs win; without one, UTF-16/UTF-32 are recognised by the NUL pattern
    around printable characters. Anything else, including inputs shorter
    than four bytes, is read as UTF-8.
    """
    if len(head) < 4:
        return 'utf-8'
    b0, b1, b2, b3 = head[:4]
    if head.startswith(codecs.BOM_UTF8):
        return 'utf-8-sig'
    if head.startswith(codecs.BOM_UTF16_BE):
        return 'utf-16'
    if head.startswith(codecs.BOM_UTF16_LE) and (b2 != 0 or b3 != 0):
        return 'utf-16'
    if head.startswith(codecs.BOM_UTF32_BE) or head.startswith(codecs.BOM_UTF32_LE):
        return 'utf-32'
    if b0 == 0 and _printable(b1) and b2 == 0 and _printable(b3):
        return 'utf-16-be'
    if _printable(b0) and b1 == 0 and _printable(b2) and b3 == 0:
        return 'utf-16-le'
    if b0 == 0 and b1 == 0 and b2 == 0 and _printable(b3):
        return 'utf-32-be'
    if _printable(b0) and b1 == 0 and b2 == 0 and b3 == 0:
        return 'utf-32-le'
    return 'utf-8'


def decode_manifest(raw: BinaryIO, chunk_size=DEFAULT_CHUNK_SIZE) -> Iterator[str]:
    """Yield the manifest as decoded text chunks.

    UTF-8 input keeps undecodable bytes as surrogates so names round-trip to
    the filesystem unchanged.
    """
    head = raw.read(4)
    encoding = detect_manifest_encoding(head)
    errors = 'surrogateescape' if encoding.startswith('utf-8') else 'replace'
    decoder = codecs.getincrementaldecoder(encoding)(errors)
    data = head
    while data:
        text = decoder.decode(data)
        if text:
            yield text
        data = raw.read(chunk_size)
    text = decoder.decode(b'', final=True)
    if text:
        yield text


class ChecksumReader:
    """Parses checksum manifests in plain or tagged layout."""

    def __init__(self, name='SHA256', width=32, tag=False, zero=False, crlf=False):
        self.name = name
        self.width = width
        self.tag = tag
        self.zero = zero
        self.crlf = crlf

    @property
    def hex_width(self) -> int:
        return self.width * 2

    def parse_line(self, line: str) -> Optional[Tuple[bytes, str]]:
        """Return ``(digest, name)`` for a well-formed line, otherwise None."""
        if self.tag:
            return self._parse_tagged(line)
        return self._parse_plain(line)

    def _parse_plain(self, line: str) -> Optional[Tuple[bytes, str]]:
        hex_width = self.hex_width
        escaped = line[:1] in ESCAPE_MARKERS
        if escaped:
            line = line[1:]
        if len(line) <= hex_width + 2:
            return None
        if line[hex_width] != ' ' or line[hex_width + 1] not in (' ', '*'):
            return None
        digest = _decode_hex(line[:hex_width])
        if digest is None:
            return None
        name = line[hex_width + 2:]
        if escaped:
            name = unescape_name(name)
        return digest, name

    def _parse_tagged(self, line: str) -> Optional[Tuple[bytes, str]]:
        hex_width = self.hex_width
        tag_len = len(self.name)
        escaped = line[:1] in ESCAPE_MARKERS
        if escaped:
            line = line[1:]
        if len(line) <= hex_width + tag_len + 6:
            return None
        # All three markers must be present
        if (not line.startswith(self.name)
                or line[tag_len:tag_len + 2] != ' ('
                or line[-hex_width - 4:-hex_width] != ') = '):
            return None
        digest = _decode_hex(line[-hex_width:])
        if digest is None:
            return None
        name = line[tag_len + 2:-hex_width - 4]
        if escaped:
            name = unescape_name(name)
        return digest, name

    def _trim(self, line: str) -> str:
        if self.crlf and not self.zero and line.endswith('\r'):
            return line[:-1]
        return line

    def iter_lines(self, raw: BinaryIO) -> Iterator[str]:
        """Split a raw manifest stream into lines according to the separator mode."""
        sep = '\0' if self.zero else '\n'
        # Unterminated pieces of the current line, joined once it ends
        parts: List[str] = []
        for text in decode_manifest(raw):
            pieces = text.split(sep)
            if len(pieces) == 1:
                parts.append(text)
                continue
            parts.append(pieces[0])
            yield self._trim(''.join(parts))
            for line in pieces[1:-1]:
                yield self._trim(line)
            parts = [pieces[-1]] if pieces[-1] else []
        tail = ''.join(parts)
        if tail:
            yield self._trim(tail)

    def read(self, path: str, stdin: StdinClaim
             ) -> Iterator[Tuple[Optional[bytes], str, Optional[ChecksumError]]]:
        """Yield ``(digest, name, None)`` per valid line, ``(None, path, error)`` otherwise.

        A manifest that cannot be read yields one file-level error. A manifest
        without a single valid line yields an extra NO_VALID_LINES error after
        its bad lines.
        """
        valid = 0
        try:
            with open_input(path, stdin) as raw:
                for line_no, line in enumerate(self.iter_lines(raw), 1):
                    parsed = self.parse_line(line)
                    if (parsed is not None and parsed[1] == STDIN_PLACEHOLDER
                            and path == STDIN_PLACEHOLDER):
                        parsed = None
                    if parsed is None:
                        yield None, path, ChecksumError.bad_line(path, line_no, self.name)
                    else:
                        valid += 1
                        yield parsed[0], parsed[1], None
        except OSError as e:
            yield None, path, ChecksumError.from_os_error(e, path)
            return
        if valid == 0:
            yield None, path, ChecksumError.no_valid_lines(path, self.name)


class ChecksumWriter:
    """Formats digests as plain or tagged manifest lines."""

    def __init__(self, name='SHA256', tag=False, zero=False, binary=False):
        self.name = name
        self.tag = tag
        self.zero = zero
        self.binary = binary

    def format_line(self, digest: bytes, name: str) -> str:
        sep = '\0' if self.zero else '\n'
        prefix = ''
        if not self.zero:
            name, escaped = escape_name(name)
            if escaped:
                prefix = '\\'
        if self.tag:
            return f"{prefix}{self.name} ({name}) = {digest.hex()}{sep}"
        flag = '*' if self.binary else ' '
        return f"{prefix}{digest.hex()} {flag}{name}{sep}"

    def write(self, out: BinaryIO, digest: bytes, name: str):
        out.write(self.format_line(digest, name).encode('utf-8', 'surrogateescape'))


def to_unix_path(native_path: str) -> str:
    if os.sep == '/':
        return native_path
    return native_path.replace(os.sep, '/')


def from_unix_path(unix_path: str) -> str:
    if os.sep == '/':
        return unix_path
    return unix_path.replace('/', os.sep)


def is_looping(path: str) -> bool:
    """Check whether ``path`` resolves onto one of its own ancestors.

    Every prefix of the absolute path is resolved in turn; a canonical form
    seen twice before the filesystem root means a symlink loop. Raises
    OSError when a prefix cannot be resolved.
    """
    current = os.path.abspath(path)
    seen: Set[str] = set()
    while True:
        try:
            real = str(Path(current).resolve(strict=True))
        except RuntimeError:
            # Python 3.12 and older report a self-referencing link this way
            return True
        except OSError as e:
            # Python 3.13 and newer raise ELOOP instead
            if e.errno == errno.ELOOP:
                return True
            raise
        if real in seen:
            return True
        seen.add(real)
        head, tail = os.path.split(current)
        if not tail:
            return False
        current = head


class RegularFileWalker:
    """Depth-first finder of regular files with symlink loop detection."""

    def __init__(self, follow_symlinks=False, batch_size=READDIR_BATCH_SIZE):
        self.follow_symlinks = follow_symlinks
        self.batch_size = batch_size

    def _stat(self, path: str) -> os.stat_result:
        if self.follow_symlinks:
            return os.stat(path)
        return os.lstat(path)

    def walk(self, root: str, emit: Callable[[str, Optional[ChecksumError]], None]):
        """
        Report every regular file under ``root`` through ``emit``.

        Args:
            root: File or directory to expand; always dereferenced
            emit: Called as ``emit(path, None)`` per file, ``emit(path, error)`` per failure
        """
        try:
            info = os.stat(root)
        except OSError as e:
            emit(root, ChecksumError.from_os_error(e, root))
            return
        if stat.S_ISREG(info.st_mode):
            emit(root, None)
        elif stat.S_ISDIR(info.st_mode):
            self._walk_dir(root, emit)

    def _walk_dir(self, root: str, emit: Callable[[str, Optional[ChecksumError]], None]):
        try:
            entries = os.scandir(root)
        except OSError as e:
            emit(root, ChecksumError.from_os_error(e, root))
            return
        with entries:
            while True:
                try:
                    batch = list(itertools.islice(entries, self.batch_size))
                except OSError as e:
                    emit(root, ChecksumError.from_os_error(e, root))
                    return
                if not batch:
                    return
                for entry in batch:
                    self._visit(os.path.join(root, entry.name), emit)

    def _visit(self, path: str, emit: Callable[[str, Optional[ChecksumError]], None]):
        try:
            if is_looping(path):
                emit(path, ChecksumError.symlink_loop(path))
                return
            info = self._stat(path)
        except OSError as e:
            emit(path, ChecksumError.from_os_error(e, path))
            return
        if stat.S_ISREG(info.st_mode):
            emit(path, None)
        elif stat.S_ISDIR(info.st_mode):
            self._walk_dir(path, emit)


class Counter:
    """Monotonic counter shared between worker threads."""

    def __init__(self):
        self._value = 0
        self._lock = threading.Lock()

    def increment(self, amount=1):
        with self._lock:
            self._value += amount

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


def _plural(count: int, one: str, many: str) -> str:
    return one if count == 1 else many


class CheckTotals:
    """Aggregate check-mode outcomes across all manifest arguments."""

    def __init__(self, paths: List[str]):
        self.paths = list(paths)
        self.bad_lines = Counter()
        self.bad_files = Counter()
        self.errors = Counter()
        self.mismatches = 0
        self.checked_args: Set[int] = set()

    def add_result(self, result: CheckResult):
        """Record one worker outcome. Only called from the collector thread."""
        if result.status is CheckStatus.SKIPPED:
            return
        self.checked_args.add(result.arg_index)
        if result.status is CheckStatus.MISMATCH:
            self.mismatches += 1

    def unverified_paths(self) -> List[str]:
        return [path for index, path in enumerate(self.paths)
                if index not in self.checked_args]

    def finish(self, strict=False) -> int:
        """Log the closing report and return the exit code."""
        for path in self.unverified_paths():
            self.errors.increment()
            logger.error(f"{path}: no file was verified")

        bad_lines = self.bad_lines.value
        bad_files = self.bad_files.value
        if bad_lines:
            logger.warning(f"WARNING: {bad_lines} "
                           f"{_plural(bad_lines, 'line is', 'lines are')} improperly formatted")
        if bad_files:
            logger.warning(f"WARNING: {bad_files} listed "
                           f"{_plural(bad_files, 'file', 'files')} could not be read")
        if self.mismatches:
            logger.warning(f"WARNING: {self.mismatches} computed "
                           f"{_plural(self.mismatches, 'checksum', 'checksums')} did not match")

        failed = ((strict and bad_lines) or bad_files or self.errors.value
                  or self.mismatches)
        return 1 if failed else 0


class ColorFormatter:
    """Cross-platform color for check-mode status words."""

    COLORS = {
        'green': '\033[92m',
        'light_red': '\033[91m',
        'light_yellow': '\033[93m',
        'bold': '\033[1m',
        'reset': '\033[0m'
    }

    def __init__(self, use_colors=None, stream=None):
        """Initialize color formatter.

        Args:
            use_colors: If None, auto-detect terminal support. Otherwise bool.
            stream: Stream whose terminal capabilities are checked (default stdout)
        """
        if use_colors is None:
            colorama.just_fix_windows_console()
            self.use_colors = self._supports_color(stream or sys.stdout)
        else:
            self.use_colors = use_colors

    def _supports_color(self, stream) -> bool:
        if os.environ.get('NO_COLOR') or os.environ.get('PARSUM_NO_COLOR'):
            return False
        if os.environ.get('FORCE_COLOR') or os.environ.get('PARSUM_FORCE_COLOR'):
            return True
        if not hasattr(stream, 'isatty') or not stream.isatty():
            return False
        if is_windows():
            return True
        term = os.environ.get('TERM', '').lower()
        if any(x in term for x in ['color', 'xterm', 'screen', 'tmux']):
            return True
        return bool(os.environ.get('COLORTERM'))

    def colorize(self, text, color=None, bold=False):
        if not self.use_colors:
            return text
        codes = []
        if bold:
            codes.append(self.COLORS['bold'])
        if color and color in self.COLORS:
            codes.append(self.COLORS[color])
        if codes:
            return ''.join(codes) + text + self.COLORS['reset']
        return text

    def success(self, text, bold=False):
        return self.colorize(text, 'green', bold)

    def error(self, text, bold=False):
        return self.colorize(text, 'light_red', bold)

    def warning(self, text, bold=False):
        return self.colorize(text, 'light_yellow', bold)

    def status(self, status: CheckStatus) -> str:
        if status is CheckStatus.VERIFIED:
            return self.success(status.value)
        if status is CheckStatus.UNREADABLE:
            return self.warning(status.value, bold=True)
        return self.error(status.value, bold=True)


class Options:
    """Run configuration, normally built from the command line."""

    # Flags that only make sense together with --check
    CHECK_ONLY_FLAGS = [
        ('crlf', '--crlf'),
        ('ignore_missing', '--ignore-missing'),
        ('quiet', '--quiet'),
        ('status', '--status'),
        ('strict', '--strict'),
        ('warn', '--warn'),
    ]

    def __init__(self, paths=None, algorithm=DEFAULT_ALGORITHM, binary=False,
                 check=False, jobs=1, dereference=False, native_path=False,
                 recursive=False, tag=False, zero=False, crlf=False,
                 ignore_missing=False, quiet=False, status=False, strict=False,
                 warn=False, no_color=False, log_file=None):
        self.paths = list(paths) if paths else [STDIN_PLACEHOLDER]
        self.algorithm = algorithm
        self.binary = binary
        self.check = check
        self.jobs = jobs
        self.dereference = dereference
        self.native_path = native_path
        self.recursive = recursive
        self.tag = tag
        self.zero = zero
        self.crlf = crlf
        self.ignore_missing = ignore_missing
        self.quiet = quiet
        self.status = status
        self.strict = strict
        self.warn = warn
        self.no_color = no_color
        self.log_file = log_file

    @classmethod
    def from_args(cls, args) -> 'Options':
        """Create validated options from parsed command line arguments."""
        options = cls(
            paths=args.paths,
            algorithm=args.algorithm,
            binary=args.binary,
            check=args.check,
            jobs=args.jobs,
            dereference=args.dereference,
            native_path=args.native_path,
            recursive=args.recursive,
            tag=args.tag,
            zero=args.zero,
            crlf=args.crlf,
            ignore_missing=args.ignore_missing,
            quiet=args.quiet,
            status=args.status,
            strict=args.strict,
            warn=args.warn,
            no_color=args.no_color,
            log_file=args.log,
        )
        options.validate()
        return options

    def validate(self):
        """Reject meaningless combinations. Raises OptionsError."""
        for attr, flag in self.CHECK_ONLY_FLAGS:
            if getattr(self, attr) and not self.check:
                raise OptionsError(f"the {flag} option is meaningful only when verifying checksums")
        if self.recursive and self.check:
            raise OptionsError("the --recursive option is meaningless when verifying checksums")
        if self.dereference and not self.recursive:
            raise OptionsError("the --dereference option is meaningful only with --recursive")
        if self.jobs is None or self.jobs <= 0:
            raise OptionsError("the --jobs option requires a positive integer argument")
        if self.algorithm not in SUPPORTED_ALGORITHMS:
            raise OptionsError(f"unsupported algorithm: {self.algorithm}")

        # Windows file names can't contain "\r"
        if self.check and not self.crlf and is_windows():
            self.crlf = True


# End-of-stream marker placed on a queue once per consumer
_END = object()


class SumPipeline:
    """Producer, worker pool and collector wiring for hash and check runs.

    One producer thread feeds a bounded work queue, ``jobs`` worker threads
    each own a HashCalculator and push to a bounded result queue, and the
    calling thread collects. A supervisor thread closes the result queue once
    every worker has drained the work queue. With one job, output order
    equals input order.
    """

    def __init__(self, options: Options, stdin: Optional[StdinClaim] = None,
                 out: Optional[BinaryIO] = None, color_formatter: Optional[ColorFormatter] = None):
        self.options = options
        self.stdin = stdin or StdinClaim()
        self.out = out if out is not None else sys.stdout.buffer
        self.color_formatter = color_formatter or ColorFormatter(use_colors=False)
        probe = HashCalculator(options.algorithm)
        self.tag_name = probe.tag_name
        self.digest_size = probe.digest_size
        self.errors = Counter()

    def _run(self, produce: Callable[[Callable], None],
             work: Callable[[HashCalculator, object], object],
             collect: Callable[[object], None]):
        jobs = max(1, self.options.jobs)
        work_queue = queue.Queue(maxsize=jobs * QUEUE_DEPTH_PER_JOB)
        result_queue = queue.Queue(maxsize=jobs * QUEUE_DEPTH_PER_JOB)

        def producer():
            try:
                produce(work_queue.put)
            except Exception as e:
                self._report_unexpected(e, "input")
            finally:
                for _ in range(jobs):
                    work_queue.put(_END)

        def worker():
            calculator = HashCalculator(self.options.algorithm)
            # Keep draining until _END so the producer never blocks on a full queue
            while True:
                item = work_queue.get()
                if item is _END:
                    return
                try:
                    result = work(calculator, item)
                except Exception as e:
                    self._report_unexpected(e, item)
                    continue
                if result is not None:
                    result_queue.put(result)

        workers = [threading.Thread(target=worker, name=f"{PROG_NAME}-worker-{i}", daemon=True)
                   for i in range(jobs)]

        def supervisor():
            for thread in workers:
                thread.join()
            result_queue.put(_END)

        threads = [threading.Thread(target=producer, name=f"{PROG_NAME}-producer", daemon=True)]
        threads.extend(workers)
        threads.append(threading.Thread(target=supervisor, name=f"{PROG_NAME}-supervisor", daemon=True))
        for thread in threads:
            thread.start()

        while True:
            result = result_queue.get()
            if result is _END:
                break
            collect(result)

        for thread in threads:
            thread.join()

    def _report(self, error: ChecksumError):
        self.errors.increment()
        logger.error(error.message)

    def _report_unexpected(self, exc: Exception, item):
        self.errors.increment()
        logger.error(f"Unexpected error on {item}: {exc}")
        logger.debug(traceback.format_exc())

    def hash_files(self) -> int:
        """Hash every input (expanded when recursive) and write manifest lines."""
        options = self.options
        writer = ChecksumWriter(self.tag_name, tag=options.tag, zero=options.zero,
                                binary=options.binary)

        def produce(put):
            if not options.recursive:
                for path in options.paths:
                    put(path)
                return
            walker = RegularFileWalker(follow_symlinks=options.dereference)

            def emit(path, error):
                if error is None:
                    put(path)
                else:
                    self._report(error)

            for path in options.paths:
                walker.walk(path, emit)

        def work(calculator, path):
            try:
                digest = calculator.calculate_file_hash(path, self.stdin)
            except (OSError, ValueError) as e:
                self._report(ChecksumError.from_os_error(e, path))
                return None
            logger.debug(f"Hashed: {path}")
            return HashResult(path, digest)

        def collect(result):
            name = result.name if options.native_path else to_unix_path(result.name)
            writer.write(self.out, result.digest, name)

        self._run(produce, work, collect)
        self.out.flush()
        return 1 if self.errors.value else 0

    def check_files(self) -> int:
        """Verify every entry of every manifest argument and report per line."""
        options = self.options
        totals = CheckTotals(options.paths)
        reader = ChecksumReader(self.tag_name, self.digest_size, tag=options.tag,
                                zero=options.zero, crlf=options.crlf)

        def produce(put):
            # Manifests are read one after the other to keep per-argument attribution
            for index, path in enumerate(options.paths):
                for digest, name, error in reader.read(path, self.stdin):
                    if error is None:
                        put(ManifestEntry(index, name, digest))
                    elif error.kind is ErrorKind.BAD_LINE:
                        totals.bad_lines.increment()
                        if options.warn:
                            logger.warning(error.message)
                    else:
                        totals.errors.increment()
                        logger.error(error.message)

        def work(calculator, entry):
            path = entry.name if options.native_path else from_unix_path(entry.name)
            try:
                digest = calculator.calculate_file_hash(path, self.stdin)
            except (OSError, ValueError) as e:
                # ValueError: open() rejects names with an embedded NUL
                error = ChecksumError.from_os_error(e, path)
                if options.ignore_missing and error.kind is ErrorKind.NOT_FOUND:
                    logger.debug(f"Skipped missing: {path}")
                    return CheckResult(entry.arg_index, entry.name, CheckStatus.SKIPPED)
                logger.error(error.message)
                totals.bad_files.increment()
                return CheckResult(entry.arg_index, entry.name, CheckStatus.UNREADABLE)
            if digest == entry.digest:
                logger.debug(f"Verified: {path}")
                return CheckResult(entry.arg_index, entry.name, CheckStatus.VERIFIED)
            logger.debug(f"Hash mismatch: {path} - expected {entry.digest.hex()[:16]}... "
                         f"got {digest.hex()[:16]}...")
            return CheckResult(entry.arg_index, entry.name, CheckStatus.MISMATCH)

        def collect(result):
            totals.add_result(result)
            if result.status is CheckStatus.SKIPPED or options.status:
                return
            if result.status is CheckStatus.VERIFIED and options.quiet:
                return
            self._print_status(result)

        self._run(produce, work, collect)
        self.out.flush()
        code = totals.finish(strict=options.strict)
        return 1 if self.errors.value else code

    def _print_status(self, result: CheckResult):
        name = result.name
        if '\n' in name:
            name = '\\' + escape_name(name)[0]
        status = self.color_formatter.status(result.status)
        self.out.write(f"{name}: {status}\n".encode('utf-8', 'surrogateescape'))


def create_argument_parser():
    """Create the command line parser."""
    parser = argparse.ArgumentParser(
        prog=PROG_NAME,
        description='Print or check checksums of files, using a pool of workers.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
With no PATH, or when PATH is -, read standard input.

Examples:
  %(prog)s file.iso                              # Print checksum of one file
  %(prog)s -r --jobs 8 /data > data.sha256       # Hash a tree with 8 workers
  %(prog)s --tag -z *.tar.gz                     # BSD-style, NUL-terminated lines
  %(prog)s -c data.sha256                        # Verify a manifest
  %(prog)s -c --ignore-missing -q data.sha256    # Only report problems

Note: binary and text mode read files identically; the flags only select
'*' or ' ' before file names. Command-line symbolic links are always
dereferenced, so --dereference is meaningful only with --recursive.
Pass -j last or as --jobs=N; a bare -j uses one job per CPU.
        """)

    parser.add_argument('paths', nargs='*', metavar='PATH',
                        help="files to hash, or manifests to check with -c (default: -)")
    parser.add_argument('-b', '--binary', action='store_true', default=False,
                        help='read in binary mode')
    parser.add_argument('-t', '--text', dest='binary', action='store_false', default=False,
                        help='read in text mode (default)')
    parser.add_argument('-c', '--check', action='store_true',
                        help='read checksums from the PATHs and check them')
    parser.add_argument('-j', '--jobs', nargs='?', type=int, default=1,
                        const=os.cpu_count() or 1, metavar='N',
                        help='allow N jobs at once, CPU count with no N')
    parser.add_argument('-L', '--dereference', action='store_true', default=False,
                        help='always follow symbolic links in PATHs')
    parser.add_argument('-P', '--no-dereference', dest='dereference', action='store_false',
                        default=False, help='never follow symbolic links in PATHs (default)')
    parser.add_argument('--native-path', action='store_true',
                        help='keep the native path separator instead of /')
    parser.add_argument('-r', '--recursive', action='store_true',
                        help='traverse directories in PATHs')
    parser.add_argument('--tag', action='store_true',
                        help='create or read BSD-style checksums')
    parser.add_argument('-z', '--zero', action='store_true',
                        help='end each output line with NUL, not newline, '
                             'and disable file name escaping')
    parser.add_argument('--algorithm', choices=SUPPORTED_ALGORITHMS, default=DEFAULT_ALGORITHM,
                        help=f'hash algorithm (default: {DEFAULT_ALGORITHM})')

    check_group = parser.add_argument_group('verification options (only with --check)')
    check_group.add_argument('--crlf', action='store_true',
                             help='allow checksum lines ending with CRLF (always on for Windows)')
    check_group.add_argument('--ignore-missing', action='store_true',
                             help="don't fail or report status for missing files")
    check_group.add_argument('-q', '--quiet', action='store_true',
                             help="don't print OK for each successfully verified file")
    check_group.add_argument('--status', action='store_true',
                             help="don't output anything, exit code shows success")
    check_group.add_argument('--strict', action='store_true',
                             help='exit non-zero for improperly formatted checksum lines')
    check_group.add_argument('-w', '--warn', action='store_true',
                             help='warn about improperly formatted checksum lines')

    parser.add_argument('--no-color', action='store_true',
                        help='Disable colored output')
    parser.add_argument('--log', metavar='FILE',
                        help='Write detailed log to file')
    parser.add_argument('-v', '--version', action='version',
                        version=f'{PROG_NAME} {__version__}')
    return parser


def setup_logging(status=False, log_file=None):
    """Configure the tool logger: prefixed messages on stderr, optional log file."""
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(logging.Formatter(f'{PROG_NAME}: %(message)s'))
    # --status silences everything but the exit code
    console.setLevel(logging.CRITICAL + 1 if status else logging.INFO)
    logger.addHandler(console)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(levelname)s - %(threadName)s - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        file_handler.setLevel(logging.DEBUG)
        logger.addHandler(file_handler)
        logger.debug(f"Detailed logging enabled to: {log_file}")


def main(argv=None):
    """Main entry point."""
    parser = create_argument_parser()
    args = parser.parse_args(argv)

    try:
        options = Options.from_args(args)
    except OptionsError as e:
        setup_logging()
        logger.error(str(e))
        logger.error(f"Try '{PROG_NAME} --help' for more information.")
        return 1

    try:
        setup_logging(status=options.status, log_file=options.log_file)
        logger.debug(f"{PROG_NAME} v{__version__}: {'check' if options.check else 'hash'} mode, "
                     f"{options.algorithm}, {options.jobs} job(s)")

        color_formatter = ColorFormatter(use_colors=False if options.no_color or options.status else None)
        pipeline = SumPipeline(options, StdinClaim(), color_formatter=color_formatter)
        if options.check:
            return pipeline.check_files()
        return pipeline.hash_files()

    except KeyboardInterrupt:
        logger.info("Operation interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        logger.debug(traceback.format_exc())
        return 1


if __name__ == '__main__':
    sys.exit(main())
