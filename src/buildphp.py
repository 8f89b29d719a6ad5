#!/usr/bin/env python3
"""buildphp.py - builds a single-binary php with static-php-cli

features:

- Single script which bootstraps static-php-cli, fetches the native libraries
  the selected extensions need and drives the static build to completion
- Watches toolchain output while it runs and recovers from missing library
  failures by downloading the library and restarting the build
- Packages the resulting binary into `{os}/{arch}/php-{version}.zip`

class structure:

BuildError
    BuildEnvironmentError
        ValidationError
    CommandError
        CommandTimeout
    ToolchainBootstrapError
    DependencyError
    DownloadError
    CompileError
    PackagingError

ProcessRunner -> ProcessHandle
OutputClassifier
RetryPolicy
Prompt
    ConsolePrompt
    AutoPrompt
ShellCmd
    Toolchain
    PhpBuilder
AcquisitionMethod
    DirectDownload
    StreamedDownload
DependencyResolver
ArtifactPackager

"""

import argparse
import datetime
import json
import logging
import os
import platform
import queue
import re
import shlex
import shutil
import signal
import subprocess
import sys
import threading
import time
import zipfile
from collections import Counter, deque
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Generic, Iterator, Optional, Sequence, TypeVar, Union
from urllib.request import urlretrieve

__version__ = "0.1.0"

# ----------------------------------------------------------------------------
# type aliases

Pathlike = Union[str, Path]
LineFn = Callable[[str], None]
SleepFn = Callable[[float], None]
T = TypeVar("T")


# ----------------------------------------------------------------------------
# env helpers


def getenv(key: str, default: bool = False) -> bool:
    """convert '0','1' env values to bool {True, False}"""
    return bool(int(os.getenv(key, default)))


# ----------------------------------------------------------------------------
# constants

DEFAULT_PHP_VERSION = "8.3.21"
PHP_VERSIONS = ["8.2.16", "8.3.21", "8.4"]
SAPIS = ["cli", "micro"]
TARGET_OSES = ["Windows", "macOS", "Linux"]
OS_NAMES = {"Windows": "Windows", "Darwin": "macOS", "Linux": "Linux"}
ARCH_NAMES = {
    "x86_64": "x64",
    "amd64": "x64",
    "x64": "x64",
    "arm64": "arm64",
    "aarch64": "arm64",
}

SPC_REPO_URL = "https://github.com/crazywhalecc/static-php-cli.git"
PHP_SDK_REPO_URL = "https://github.com/php/php-sdk-binary-tools.git"
PHP_DIST_URL = "https://www.php.net/distributions/{archive}"
SPC_DOWNLOAD_ENV = "SPC_DOWNLOAD_PATH"
VSWHERE = r"C:\Program Files (x86)\Microsoft Visual Studio\Installer\vswhere.exe"

DEFAULT_TOOLCHAIN_PATH = os.getenv("BUILDPHP_PATH", "static-php-cli")
DEFAULT_DIST_ROOT = "vendor/nativephp/php-bin/bin"

# seconds
DOWNLOAD_TIMEOUT = 300
LIBRARY_BUILD_TIMEOUT = 1800
BUILD_TIMEOUT = 3600
RETRY_DELAY = 2.0
POLL_INTERVAL = 0.1

MAX_ATTEMPTS = 3
OUTPUT_TAIL = 40

EXTENSIONS = [
    "bcmath",
    "bz2",
    "ctype",
    "curl",
    "dom",
    "fileinfo",
    "filter",
    "gd",
    "iconv",
    "mbstring",
    "opcache",
    "openssl",
    "pdo",
    "pdo_sqlite",
    "pdo_mysql",
    "pdo_pgsql",
    "phar",
    "session",
    "simplexml",
    "sockets",
    "sqlite3",
    "tokenizer",
    "xml",
    "zip",
    "zlib",
    "sqlsrv",
    "pdo_sqlsrv",
]

REQUIRED_LIBRARIES = [
    "bzip2",
    "zlib",
    "openssl",
    "libssh2",
    "libiconv-win",
    "libxml2",
    "nghttp2",
    "curl",
    "libpng",
    "sqlite",
    "xz",
    "libzip",
]

# sources downloaded and unpacked ahead of the build (sqlsrv needs these)
CORE_DEPENDENCIES = [
    "libxml2",
    "openssl",
    "zlib",
    "bzip2",
    "libssh2",
    "nghttp2",
    "curl",
    "libpng",
    "libiconv-win",
]

# ----------------------------------------------------------------------------
# envar options

DEBUG = getenv("DEBUG", default=False)
COLOR = getenv("COLOR", default=True)


# ----------------------------------------------------------------------------
# logging config


class CustomFormatter(logging.Formatter):
    """custom logging formatting class"""

    white = "\x1b[97;20m"
    grey = "\x1b[38;20m"
    green = "\x1b[32;20m"
    yellow = "\x1b[33;20m"
    red = "\x1b[31;20m"
    bold_red = "\x1b[31;1m"
    reset = "\x1b[0m"
    fmt = "%(delta)s - %(levelname)s - %(name)s.%(funcName)s - %(message)s"
    cfmt = (
        f"{white}%(delta)s{reset} - "
        f"{{}}%(levelname)s{{}} - "
        f"{white}%(name)s.%(funcName)s{reset} - "
        f"{grey}%(message)s{reset}"
    )

    FORMATS = {
        logging.DEBUG: cfmt.format(grey, reset),
        logging.INFO: cfmt.format(green, reset),
        logging.WARNING: cfmt.format(yellow, reset),
        logging.ERROR: cfmt.format(red, reset),
        logging.CRITICAL: cfmt.format(bold_red, reset),
    }

    def __init__(self, use_color: bool = COLOR) -> None:
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        """custom logger formatting method"""
        if not self.use_color:
            log_fmt: str = self.fmt
        else:
            log_fmt = self.FORMATS.get(record.levelno, self.fmt)
        duration = datetime.datetime.fromtimestamp(
            record.relativeCreated / 1000, datetime.timezone.utc
        )
        record.delta = duration.strftime("%H:%M:%S")
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


strm_handler = logging.StreamHandler()
strm_handler.setFormatter(CustomFormatter())
logging.basicConfig(
    level=logging.DEBUG if DEBUG else logging.INFO,
    handlers=[strm_handler],
)


# ----------------------------------------------------------------------------
# custom exceptions


class BuildError(Exception):
    """Base exception for build errors

    Carries enough context for an operator to pick up by hand: the command
    line that failed, the last lines it printed and the library involved.
    """

    def __init__(
        self,
        message: str,
        *,
        command: Optional[Sequence[str]] = None,
        output_tail: Optional[Sequence[str]] = None,
        library: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.command = list(command) if command else None
        self.output_tail = list(output_tail or [])
        self.library = library

    def details(self) -> str:
        """multi-line report of the error and its context"""
        lines = [self.message]
        if self.library:
            lines.append(f"library: {self.library}")
        if self.command:
            lines.append(f"command: {shlex.join(self.command)}")
        if self.output_tail:
            lines.append("output (tail):")
            lines.extend(f"  {line}" for line in self.output_tail)
        return "\n".join(lines)


class BuildEnvironmentError(BuildError):
    """Unsupported OS or missing runtime capability"""


class ValidationError(BuildEnvironmentError):
    """Exception for invalid build requests and settings"""


class CommandError(BuildError):
    """Exception for command execution errors"""


class CommandTimeout(CommandError):
    """Command exceeded its timeout and was killed"""


class ToolchainBootstrapError(BuildError):
    """static-php-cli could not be cloned or installed"""


class DependencyError(BuildError):
    """Native library could not be acquired"""


class DownloadError(BuildError):
    """Exception for download errors"""


class CompileError(BuildError):
    """Build command failed for a reason other than a missing library"""


class PackagingError(BuildError):
    """Built binary is missing or the archive could not be written"""


# ----------------------------------------------------------------------------
# platform detection utilities


class PlatformInfo:
    """Centralized platform detection and configuration"""

    def __init__(
        self, system: Optional[str] = None, machine: Optional[str] = None
    ) -> None:
        self.system = system or platform.system()
        self.machine = machine or platform.machine()

    @property
    def is_darwin(self) -> bool:
        """Check if running on macOS"""
        return self.system == "Darwin"

    @property
    def is_linux(self) -> bool:
        """Check if running on Linux"""
        return self.system == "Linux"

    @property
    def is_windows(self) -> bool:
        """Check if running on Windows"""
        return self.system == "Windows"

    @property
    def os_name(self) -> str:
        """os name as used in archive paths: Windows, macOS or Linux"""
        return OS_NAMES.get(self.system, self.system)

    @property
    def arch(self) -> str:
        """architecture as used in archive paths: x64 or arm64"""
        return ARCH_NAMES.get(self.machine.lower(), self.machine.lower())

    def check(self) -> str:
        """return os name or raise if the platform is not supported"""
        if self.system not in OS_NAMES:
            raise BuildEnvironmentError(f"Unsupported OS: {self.system}")
        return self.os_name


PLATFORM_INFO = PlatformInfo()


def version_key(version: str) -> tuple[int, ...]:
    """sortable key of a dotted version: '8.3.21' -> (8, 3, 21)"""
    return tuple(int(part) for part in version.split("."))


# ----------------------------------------------------------------------------
# data model


class LibraryState(Enum):
    UNKNOWN = "unknown"
    PRESENT = "present"
    DOWNLOADING = "downloading"
    DOWNLOADED = "downloaded"
    FAILED = "failed"


class BuildStatus(Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class Stage(Enum):
    INIT = "init"
    ENSURE_TOOLCHAIN = "ensure-toolchain"
    RESOLVE_DEPENDENCIES = "resolve-dependencies"
    ACQUIRE_SOURCE = "acquire-source"
    COMPILE = "compile"
    PACKAGE = "package"
    DONE = "done"


class Decision(Enum):
    CONTINUE = "continue"
    ABORT = "abort"


@dataclass
class LibraryDependency:
    """A native library and how far its acquisition got."""

    name: str
    state: LibraryState = LibraryState.UNKNOWN
    attempts: int = 0
    error: Optional[BuildError] = None

    @property
    def available(self) -> bool:
        return self.state in (LibraryState.PRESENT, LibraryState.DOWNLOADED)


@dataclass
class Resolution:
    """Outcome of one dependency resolution pass."""

    libraries: list[LibraryDependency] = field(default_factory=list)

    @property
    def missing(self) -> list[str]:
        """libraries the operator chose to continue without"""
        return [lib.name for lib in self.libraries if not lib.available]

    @property
    def degraded(self) -> bool:
        return bool(self.missing)

    def get(self, name: str) -> Optional[LibraryDependency]:
        for lib in self.libraries:
            if lib.name == name:
                return lib
        return None

    def merge(self, other: "Resolution") -> "Resolution":
        return Resolution(self.libraries + other.libraries)


@dataclass
class BuildRequest:
    """What to build: php version, extensions, sapi and where."""

    php_version: str
    extensions: list[str]
    sapi: str = "cli"
    target_os: str = PLATFORM_INFO.os_name
    toolchain_path: Path = Path(DEFAULT_TOOLCHAIN_PATH)
    upx: bool = False
    arch: str = PLATFORM_INFO.arch
    dist_root: Path = Path(DEFAULT_DIST_ROOT)

    def __post_init__(self) -> None:
        self.extensions = list(self.extensions)
        self.toolchain_path = Path(self.toolchain_path)
        self.dist_root = Path(self.dist_root)

    def validate(self, catalog: Sequence[str] = EXTENSIONS) -> None:
        """Raises ValidationError (a BuildEnvironmentError) on a bad request"""
        if not self.extensions:
            raise ValidationError("No extensions selected.")
        unknown = [ext for ext in self.extensions if ext not in catalog]
        if unknown:
            raise ValidationError(f"Unknown extensions: {', '.join(unknown)}")
        if len(set(self.extensions)) != len(self.extensions):
            raise ValidationError("Extension list contains duplicates")
        if not re.fullmatch(r"\d+\.\d+(\.\d+)?", self.php_version):
            raise ValidationError(f"Invalid php version: {self.php_version}")
        if self.sapi not in SAPIS:
            raise ValidationError(f"Unsupported sapi: {self.sapi}")
        if self.target_os not in TARGET_OSES:
            raise BuildEnvironmentError(f"Unsupported OS: {self.target_os}")

    @property
    def extension_list(self) -> str:
        return ",".join(self.extensions)

    @property
    def binary_name(self) -> str:
        """name of the binary the toolchain leaves in buildroot/bin"""
        if self.sapi == "micro":
            return "micro.sfx"
        return "php.exe" if self.target_os == "Windows" else "php"

    @property
    def archive_path(self) -> Path:
        return ArtifactPackager.archive_path(
            self.dist_root, self.target_os, self.arch, self.php_version
        )


@dataclass(frozen=True)
class BuildResult:
    status: BuildStatus
    artifact_path: Optional[Path] = None
    failure_reason: Optional[BuildError] = None
    stage: Stage = Stage.DONE

    @property
    def ok(self) -> bool:
        return self.status is BuildStatus.SUCCESS


@dataclass
class BuildOptions:
    """Knobs of the build driver that are not part of the request."""

    required_libraries: list[str] = field(
        default_factory=lambda: list(REQUIRED_LIBRARIES)
    )
    core_dependencies: list[str] = field(
        default_factory=lambda: list(CORE_DEPENDENCIES)
    )
    max_attempts: int = MAX_ATTEMPTS
    retry_delay: float = RETRY_DELAY
    max_restarts_per_library: int = 1
    # continue without a library after retries are exhausted, without asking
    allow_missing: bool = False
    # still run the build when some libraries were skipped
    compile_when_degraded: bool = False
    download_timeout: float = DOWNLOAD_TIMEOUT
    probe_timeout: float = LIBRARY_BUILD_TIMEOUT
    build_timeout: float = BUILD_TIMEOUT
    spc_search_paths: list[Path] = field(default_factory=list)


# ----------------------------------------------------------------------------
# settings


@dataclass
class Settings:
    """User overridable catalogs and defaults, optionally read from json"""

    default_path: str = DEFAULT_TOOLCHAIN_PATH
    dist_root: str = DEFAULT_DIST_ROOT
    php_versions: list[str] = field(default_factory=lambda: list(PHP_VERSIONS))
    available_extensions: list[str] = field(default_factory=lambda: list(EXTENSIONS))
    required_libraries: list[str] = field(
        default_factory=lambda: list(REQUIRED_LIBRARIES)
    )
    core_dependencies: list[str] = field(
        default_factory=lambda: list(CORE_DEPENDENCIES)
    )

    @classmethod
    def from_json(cls, path: Pathlike) -> "Settings":
        """load settings from a json file; missing keys keep their defaults"""
        try:
            data = json.loads(Path(path).read_text())
        except (OSError, json.JSONDecodeError) as e:
            raise ValidationError(f"Could not read settings from {path}: {e}") from e
        if not isinstance(data, dict):
            raise ValidationError(f"Settings in {path} must be a json object")
        settings = cls()
        for key, value in data.items():
            if not hasattr(settings, key):
                raise ValidationError(f"Unknown setting: {key}")
            default = getattr(settings, key)
            if isinstance(default, list):
                if not isinstance(value, list) or not all(
                    isinstance(item, str) for item in value
                ):
                    raise ValidationError(f"Setting {key} must be a list of strings")
            elif not isinstance(value, str):
                raise ValidationError(f"Setting {key} must be a string")
            setattr(settings, key, value)
        return settings

    def versions_newest_first(self) -> list[str]:
        return sorted(self.php_versions, key=version_key, reverse=True)

    def build_options(self) -> BuildOptions:
        return BuildOptions(
            required_libraries=list(self.required_libraries),
            core_dependencies=list(self.core_dependencies),
        )


# ----------------------------------------------------------------------------
# process runner


@dataclass
class RunResult:
    """Exit status and output tail of a command that ran to completion."""

    args: list[str]
    returncode: int
    tail: list[str]

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class ProcessHandle:
    """One running external command.

    Output (stdout and stderr merged) is pumped line by line into a queue by a
    reader thread so it can be consumed while the command is still running.
    `lines()` polls that queue at a short interval, keeps the emitted line
    order and can only be iterated once. Use the handle as a context manager
    so the process is terminated on every exit path.
    """

    def __init__(
        self,
        args: Sequence[str],
        proc: "subprocess.Popen[str]",
        timeout: Optional[float] = None,
        poll_interval: float = POLL_INTERVAL,
        tail_size: int = OUTPUT_TAIL,
    ) -> None:
        self.args = list(args)
        self.proc = proc
        self.timeout = timeout
        self.poll_interval = poll_interval
        self.tail: deque[str] = deque(maxlen=tail_size)
        self.log = logging.getLogger(self.__class__.__name__)
        self._started = time.monotonic()
        self._queue: "queue.Queue[Optional[str]]" = queue.Queue()
        self._consumed = False
        self._eof = False
        self._reader = threading.Thread(target=self._pump, daemon=True)
        self._reader.start()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} pid={self.pid} '{shlex.join(self.args)}'>"

    def __enter__(self) -> "ProcessHandle":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.terminate()
        self._reader.join(timeout=1)
        if not self._reader.is_alive() and self.proc.stdout:
            self.proc.stdout.close()

    def _pump(self) -> None:
        assert self.proc.stdout is not None
        try:
            for line in self.proc.stdout:
                self._queue.put(line.rstrip("\r\n"))
        finally:
            self._queue.put(None)

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def returncode(self) -> Optional[int]:
        return self.proc.poll()

    def running(self) -> bool:
        return self.proc.poll() is None

    def elapsed(self) -> float:
        return time.monotonic() - self._started

    def _timed_out(self) -> CommandTimeout:
        self.kill()
        return CommandTimeout(
            f"Command exceeded timeout of {self.timeout}s and was killed",
            command=self.args,
            output_tail=list(self.tail),
        )

    def _check_deadline(self) -> None:
        if self.timeout is not None and self.elapsed() > self.timeout:
            raise self._timed_out()

    def lines(self) -> Iterator[str]:
        """Yield output lines as they arrive, until the command closes its output

        Raises:
            CommandTimeout: If the timeout passes while output is awaited
        """
        if self._consumed:
            raise RuntimeError(f"output of {self!r} was already consumed")
        self._consumed = True
        while not self._eof:
            try:
                line = self._queue.get(timeout=self.poll_interval)
            except queue.Empty:
                self._check_deadline()
                continue
            if line is None:
                self._eof = True
                return
            self.tail.append(line)
            yield line
            self._check_deadline()

    def _drain(self) -> None:
        """move output nobody read into the tail"""
        while not self._eof:
            try:
                line = self._queue.get_nowait()
            except queue.Empty:
                return
            if line is None:
                self._eof = True
            else:
                self.tail.append(line)

    def wait(self) -> int:
        """Wait for the command to exit and return its exit code

        Raises:
            CommandTimeout: If the command outlives its timeout
        """
        remaining = None
        if self.timeout is not None:
            remaining = max(self.timeout - self.elapsed(), 0)
        try:
            code = self.proc.wait(timeout=remaining)
        except subprocess.TimeoutExpired as e:
            raise self._timed_out() from e
        self._reader.join(timeout=1)
        self._drain()
        return code

    def _signal_group(self, force: bool) -> None:
        """signal the command and every process it started

        The command leads its own process group (see ProcessRunner.start), so
        make and compiler processes launched by spc go down with it.
        """
        if os.name == "nt":
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(self.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
            return
        sig = signal.SIGKILL if force else signal.SIGTERM
        try:
            os.killpg(self.pid, sig)
        except (ProcessLookupError, PermissionError):
            self.log.debug("process group %s already gone", self.pid)

    def kill(self) -> None:
        if self.running():
            self.log.warning("killing pid %s and its children", self.pid)
            self._signal_group(force=True)
            self.proc.wait()

    def terminate(self, grace: float = 5.0) -> None:
        """terminate the command, killing it if it ignores the request"""
        if not self.running():
            return
        self.log.debug("terminating pid %s", self.pid)
        self._signal_group(force=False)
        try:
            self.proc.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            self.kill()


class ProcessRunner:
    """Starts external commands with streamed output and an optional timeout"""

    def __init__(self, poll_interval: float = POLL_INTERVAL) -> None:
        self.poll_interval = poll_interval
        self.log = logging.getLogger(self.__class__.__name__)

    def start(
        self,
        args: Sequence[str],
        cwd: Optional[Pathlike] = None,
        env: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
    ) -> ProcessHandle:
        """Start a command; `env` entries are layered over the current environment

        Raises:
            CommandError: If the command cannot be started at all
        """
        args = [str(arg) for arg in args]
        self.log.info(shlex.join(args))
        _env = None
        if env:
            _env = dict(os.environ)
            _env.update(env)
        if os.name == "nt":
            group: dict[str, Any] = {"creationflags": subprocess.CREATE_NEW_PROCESS_GROUP}
        else:
            group = {"start_new_session": True}
        try:
            proc = subprocess.Popen(
                args,
                cwd=str(cwd) if cwd else None,
                env=_env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf8",
                errors="replace",
                bufsize=1,
                **group,
            )
        except OSError as e:
            raise CommandError(f"Could not start {args[0]}: {e}", command=args) from e
        return ProcessHandle(args, proc, timeout=timeout, poll_interval=self.poll_interval)

    def run(
        self,
        args: Sequence[str],
        cwd: Optional[Pathlike] = None,
        env: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        echo: Optional[LineFn] = None,
    ) -> RunResult:
        """run a command to completion, passing each output line to `echo`"""
        with self.start(args, cwd=cwd, env=env, timeout=timeout) as handle:
            for line in handle.lines():
                if echo:
                    echo(line)
            code = handle.wait()
        return RunResult(list(handle.args), code, list(handle.tail))


# ----------------------------------------------------------------------------
# output classifier


@dataclass(frozen=True)
class Signal:
    """meaning extracted from a line of toolchain output"""


@dataclass(frozen=True)
class DependencyMissing(Signal):
    library: Optional[str] = None


@dataclass(frozen=True)
class StageMarker(Signal):
    library: str


_LIB = r"(?P<lib>[A-Za-z0-9_.+-]+)"

# first match wins; update this table when static-php-cli changes its wording
SIGNATURES: list[tuple["re.Pattern[str]", Callable[["re.Match[str]"], Signal]]] = [
    (
        re.compile(rf"Building required lib \[{_LIB}\]"),
        lambda m: StageMarker(m["lib"]),
    ),
    (
        re.compile(
            rf"(?:source|lib(?:rary)?)\s*\[{_LIB}\]\s*(?:is\s+)?not downloaded or not locked",
            re.IGNORECASE,
        ),
        lambda m: DependencyMissing(m["lib"]),
    ),
    (
        re.compile(r"not downloaded or not locked", re.IGNORECASE),
        lambda m: DependencyMissing(),
    ),
]


def classify(line: str) -> Optional[Signal]:
    """Classify one output line; None when the line means nothing to us"""
    for pattern, make_signal in SIGNATURES:
        match = pattern.search(line)
        if match:
            return make_signal(match)
    return None


class OutputClassifier:
    """Classifies a stream of output lines.

    Remembers the last `Building required lib [X]` marker so that a bare
    'not downloaded or not locked' line is attributed to library X.
    """

    def __init__(self) -> None:
        self.library: Optional[str] = None

    def feed(self, line: str) -> Optional[Signal]:
        signal = classify(line)
        if isinstance(signal, StageMarker):
            self.library = signal.library
        elif isinstance(signal, DependencyMissing) and signal.library is None:
            if self.library:
                return DependencyMissing(self.library)
        return signal

    def scan(self, lines: Sequence[str]) -> Optional[DependencyMissing]:
        """first missing dependency in an accumulated buffer"""
        for line in lines:
            signal = self.feed(line)
            if isinstance(signal, DependencyMissing):
                return signal
        return None


# ----------------------------------------------------------------------------
# retry policy


@dataclass
class RetryState:
    max_attempts: int
    attempt: int = 0
    last_error: Optional[str] = None

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


@dataclass
class RetryOutcome(Generic[T]):
    ok: bool
    state: RetryState
    value: Optional[T] = None
    error: Optional[BuildError] = None
    aborted: bool = False

    @property
    def exhausted(self) -> bool:
        return not self.ok and not self.aborted


OnFailure = Callable[[int, BuildError], Decision]


class RetryPolicy:
    """Runs an operation until it succeeds or `max_attempts` is used up.

    A failure is a BuildError raised by the operation. After each failed
    attempt that still leaves room for another, `on_failure(attempt, error)`
    decides between Decision.CONTINUE and Decision.ABORT and the policy then
    sleeps a fixed delay. The sleep function is injectable so tests never
    wait on the clock. Exhaustion is reported, not raised: the caller picks
    the fallback.
    """

    def __init__(
        self,
        max_attempts: int = MAX_ATTEMPTS,
        delay: float = RETRY_DELAY,
        sleep: SleepFn = time.sleep,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.delay = delay
        self.sleep = sleep
        self.log = logging.getLogger(self.__class__.__name__)

    def run(
        self,
        operation: Callable[[], T],
        on_failure: Optional[OnFailure] = None,
        max_attempts: Optional[int] = None,
    ) -> RetryOutcome[T]:
        if max_attempts is None:
            max_attempts = self.max_attempts
        elif max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        state = RetryState(max_attempts=max_attempts)
        error: Optional[BuildError] = None
        while not state.exhausted:
            state.attempt += 1
            try:
                value = operation()
            except BuildError as e:
                error = e
                state.last_error = str(e)
                self.log.warning(
                    "attempt %d/%d failed: %s", state.attempt, state.max_attempts, e
                )
                if state.exhausted:
                    break
                if on_failure and on_failure(state.attempt, e) is Decision.ABORT:
                    return RetryOutcome(False, state, error=e, aborted=True)
                self.sleep(self.delay)
                continue
            return RetryOutcome(True, state, value=value)
        return RetryOutcome(False, state, error=error)


# ----------------------------------------------------------------------------
# operator prompts


class Prompt:
    """Questions the build may put to the operator"""

    def confirm(self, message: str, default: bool = False) -> bool:
        raise NotImplementedError

    def choice(self, message: str, options: Sequence[str], default: str) -> str:
        raise NotImplementedError

    def ask(self, message: str) -> str:
        raise NotImplementedError


class ConsolePrompt(Prompt):
    """Asks on the terminal; end of input picks the default"""

    def __init__(self, input_func: Callable[[str], str] = input) -> None:
        self.input = input_func

    def _read(self, message: str) -> Optional[str]:
        try:
            return self.input(message).strip()
        except EOFError:
            return None

    def confirm(self, message: str, default: bool = False) -> bool:
        hint = "[Y/n]" if default else "[y/N]"
        while True:
            answer = self._read(f"{message} {hint} ")
            if not answer:
                return default
            if answer.lower() in ("y", "yes"):
                return True
            if answer.lower() in ("n", "no"):
                return False

    def choice(self, message: str, options: Sequence[str], default: str) -> str:
        print(message)
        for i, option in enumerate(options):
            print(f"  [{i}] {option}")
        while True:
            answer = self._read(f"choice [{default}]: ")
            if not answer:
                return default
            if answer in options:
                return answer
            if answer.isdigit() and int(answer) < len(options):
                return options[int(answer)]

    def ask(self, message: str) -> str:
        return self._read(f"{message}: ") or ""


class AutoPrompt(Prompt):
    """Answers every confirmation with a fixed value and takes defaults"""

    def __init__(self, answer: bool = False) -> None:
        self.answer = answer

    def confirm(self, message: str, default: bool = False) -> bool:
        logging.getLogger(self.__class__.__name__).info(
            "%s -> %s", message, "yes" if self.answer else "no"
        )
        return self.answer

    def choice(self, message: str, options: Sequence[str], default: str) -> str:
        return default

    def ask(self, message: str) -> str:
        return ""


# ----------------------------------------------------------------------------
# utility classes


class ShellCmd:
    """Provides platform agnostic file/folder handling."""

    log: logging.Logger

    def cmd(self, shellcmd: Union[str, list[str]], cwd: Pathlike = ".") -> None:
        """Run shell command within working directory

        Args:
            shellcmd: Command as string (will be split safely) or list of args
            cwd: Working directory for command execution

        Raises:
            CommandError: If command execution fails
        """
        args = shlex.split(shellcmd) if isinstance(shellcmd, str) else shellcmd
        self.log.info(shlex.join(args))
        try:
            subprocess.check_call(args, cwd=str(cwd))
        except subprocess.CalledProcessError as e:
            self.log.critical("Command failed: %s", e)
            raise CommandError(f"Command failed: {shlex.join(args)}", command=args) from e
        except OSError as e:
            raise CommandError(f"Could not run {args[0]}: {e}", command=args) from e

    def download(self, url: str, tofolder: Optional[Pathlike] = None) -> Path:
        """Download a file from a url to an optional folder

        Raises:
            DownloadError: If download fails
        """
        _path = Path(os.path.basename(url))
        if tofolder:
            _path = Path(tofolder).joinpath(_path)
            if _path.exists():
                self.log.debug("Using cached file: %s", _path)
                return _path
        try:
            self.log.info("Downloading %s...", url)
            filename, _ = urlretrieve(url, filename=_path)
            self.log.info("Download complete: %s", os.path.basename(str(filename)))
            return Path(filename)
        except Exception as e:
            if _path.exists():
                _path.unlink()
            raise DownloadError(f"Failed to download {url}: {e}") from e

    def git_clone(
        self,
        url: str,
        directory: Optional[Pathlike] = None,
        cwd: Pathlike = ".",
    ) -> None:
        """git clone a repository source tree from a url

        Raises:
            ValidationError: If URL is invalid
            CommandError: If git clone fails
        """
        if not url.startswith(("https://", "http://", "git://", "ssh://", "git@")):
            raise ValidationError(f"Invalid git URL: {url}")

        _cmds = ["git", "clone", "--depth", "1", url]
        if directory:
            _cmds.append(str(directory))
        self.cmd(_cmds, cwd=cwd)

    def makedirs(self, path: Pathlike, mode: int = 511, exist_ok: bool = True) -> None:
        """Recursive directory creation function"""
        self.log.debug("Making directory: %s", path)
        os.makedirs(path, mode, exist_ok)

    def copy(self, src: Pathlike, dst: Pathlike) -> None:
        """copy a file, keeping its metadata"""
        self.log.info("copy %s to %s", src, dst)
        shutil.copy2(src, dst)


# ----------------------------------------------------------------------------
# toolchain


class Toolchain(ShellCmd):
    """A static-php-cli checkout and the commands run against it.

    The download directory is handed to every spc invocation through the
    `SPC_DOWNLOAD_PATH` entry of `env`; the orchestrator's own environment is
    left alone.
    """

    def __init__(
        self,
        path: Pathlike,
        target_os: str = PLATFORM_INFO.os_name,
        runner: Optional[ProcessRunner] = None,
        repo_url: str = SPC_REPO_URL,
    ) -> None:
        self.path = Path(path)
        self.target_os = target_os
        self.runner = runner or ProcessRunner()
        self.repo_url = repo_url
        self.log = logging.getLogger(self.__class__.__name__)

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.path}'>"

    @property
    def is_windows(self) -> bool:
        return self.target_os == "Windows"

    @property
    def spc(self) -> Path:
        """spc.exe in the root on windows, bin/spc elsewhere"""
        if self.is_windows:
            return self.path / "spc.exe"
        return self.path / "bin" / "spc"

    @property
    def downloads(self) -> Path:
        return self.path / "downloads"

    @property
    def source(self) -> Path:
        return self.path / "source"

    @property
    def bin_dir(self) -> Path:
        return self.path / "buildroot" / "bin"

    @property
    def env(self) -> dict[str, str]:
        return {SPC_DOWNLOAD_ENV: str(self.downloads)}

    def exists(self) -> bool:
        return self.path.exists()

    def command(self, *args: str) -> list[str]:
        return [str(self.spc), *args]

    def ensure_downloads(self) -> Path:
        """create the download cache if absent; safe to call repeatedly"""
        self.makedirs(self.downloads)
        return self.downloads

    def start(self, *args: str, timeout: Optional[float] = None) -> ProcessHandle:
        return self.runner.start(
            self.command(*args), cwd=self.path, env=self.env, timeout=timeout
        )

    def run(
        self, *args: str, timeout: Optional[float] = None, echo: Optional[LineFn] = None
    ) -> RunResult:
        return self.runner.run(
            self.command(*args), cwd=self.path, env=self.env, timeout=timeout, echo=echo
        )

    def bootstrap(self) -> None:
        """clone static-php-cli, install its composer dependencies, run doctor

        A checkout created here is removed again when a later step fails, so
        the next run starts the installation over.

        Raises:
            ToolchainBootstrapError: If any of the steps fails
        """
        self.log.info("static-php-cli not found. Cloning into %s...", self.path)
        created = not self.path.exists()
        try:
            self.git_clone(self.repo_url, directory=self.path)
            self.relax_php_constraint()
            composer = shutil.which("composer") or "composer"
            self.log.info("Installing dependencies in %s...", self.path)
            try:
                self.cmd([composer, "install"], cwd=self.path)
            except CommandError:
                self.log.info("Initial install failed, trying composer update...")
                self.cmd([composer, "update"], cwd=self.path)
            self.log.info("Initializing static-php-cli configuration...")
            result = self.run("doctor")
            if not result.ok:
                raise CommandError(
                    "spc doctor failed", command=result.args, output_tail=result.tail
                )
        except (CommandError, ValidationError) as e:
            if created and self.path.exists():
                self.log.warning("removing incomplete checkout %s", self.path)
                shutil.rmtree(self.path)
            raise ToolchainBootstrapError(
                f"Failed to install static-php-cli into {self.path}: {e}",
                command=e.command,
                output_tail=e.output_tail,
            ) from e

    def relax_php_constraint(self, constraint: str = ">=8.1") -> None:
        """loosen the php requirement in composer.json so composer resolves"""
        composer_json = self.path / "composer.json"
        if not composer_json.exists():
            return
        try:
            data = json.loads(composer_json.read_text())
        except json.JSONDecodeError:
            self.log.warning("could not parse %s, leaving it untouched", composer_json)
            return
        data.setdefault("require", {})["php"] = constraint
        composer_json.write_text(json.dumps(data, indent=4) + "\n")

    def ensure_windows_binary(self, candidates: Sequence[Pathlike]) -> None:
        """copy spc.exe into the checkout from the first candidate that exists"""
        if not self.is_windows or self.spc.exists():
            return
        self.log.info("Copying spc.exe to build directory...")
        for candidate in candidates:
            if Path(candidate).exists():
                self.makedirs(self.path)
                self.copy(candidate, self.spc)
                return
        raise ToolchainBootstrapError(
            "Could not find spc.exe in any known location: "
            + ", ".join(str(c) for c in candidates)
        )


# ----------------------------------------------------------------------------
# dependency resolver


class AcquisitionMethod:
    """one way of getting a library's sources into the download cache"""

    name: str

    def acquire(self, toolchain: Toolchain, library: str) -> None:
        raise NotImplementedError


class DirectDownload(AcquisitionMethod):
    """`spc download <lib>`, judged by its exit status"""

    name = "download"

    def __init__(self, timeout: float = DOWNLOAD_TIMEOUT) -> None:
        self.timeout = timeout

    def acquire(self, toolchain: Toolchain, library: str) -> None:
        try:
            result = toolchain.run("download", library, timeout=self.timeout)
        except CommandError as e:
            raise DownloadError(
                f"Failed to download {library}: {e}",
                command=e.command,
                output_tail=e.output_tail,
                library=library,
            ) from e
        if not result.ok:
            raise DownloadError(
                f"Failed to download {library} (exit status {result.returncode})",
                command=result.args,
                output_tail=result.tail,
                library=library,
            )


class StreamedDownload(AcquisitionMethod):
    """`spc download <lib>` with its output echoed and classified"""

    name = "streamed download"

    def __init__(self, timeout: float = DOWNLOAD_TIMEOUT) -> None:
        self.timeout = timeout
        self.out = logging.getLogger("toolchain")

    def acquire(self, toolchain: Toolchain, library: str) -> None:
        classifier = OutputClassifier()
        try:
            with toolchain.start("download", library, timeout=self.timeout) as proc:
                for line in proc.lines():
                    self.out.info(line)
                    if isinstance(classifier.feed(line), DependencyMissing):
                        raise DownloadError(
                            f"{library} still not downloaded",
                            command=proc.args,
                            output_tail=list(proc.tail),
                            library=library,
                        )
                code = proc.wait()
        except CommandError as e:
            raise DownloadError(
                f"Failed to download {library}: {e}",
                command=e.command,
                output_tail=e.output_tail,
                library=library,
            ) from e
        if code != 0:
            raise DownloadError(
                f"Failed to download {library} (exit status {code})",
                command=proc.args,
                output_tail=list(proc.tail),
                library=library,
            )


class DependencyResolver:
    """Makes sure every native library is fetched and buildable.

    For each library a `build-library` probe is run; a missing-dependency
    signature (or a failing probe) sends the library through the acquisition
    methods in order, each wrapped in the retry policy. When every method is
    exhausted the library is either skipped (allowed by configuration or by
    the operator) or a DependencyError is raised.
    """

    def __init__(
        self,
        toolchain: Toolchain,
        policy: Optional[RetryPolicy] = None,
        prompt: Optional[Prompt] = None,
        methods: Optional[Sequence[AcquisitionMethod]] = None,
        allow_missing: bool = False,
        probe_timeout: float = LIBRARY_BUILD_TIMEOUT,
        download_timeout: float = DOWNLOAD_TIMEOUT,
        sdk_url: str = PHP_SDK_REPO_URL,
    ) -> None:
        self.toolchain = toolchain
        self.policy = policy or RetryPolicy()
        self.prompt = prompt or AutoPrompt(allow_missing)
        self.methods = list(
            methods or [DirectDownload(download_timeout), StreamedDownload(download_timeout)]
        )
        self.allow_missing = allow_missing
        self.probe_timeout = probe_timeout
        self.download_timeout = download_timeout
        self.sdk_url = sdk_url
        self.log = logging.getLogger(self.__class__.__name__)
        self.out = logging.getLogger("toolchain")

    @property
    def sdk_dir(self) -> Path:
        return self.toolchain.path / "php-sdk-binary-tools"

    def _log_failure(self, lib: LibraryDependency, what: str) -> OnFailure:
        def on_failure(attempt: int, error: BuildError) -> Decision:
            lib.error = error
            self.log.warning(
                "%s %s failed (attempt %d/%d), retrying...",
                what,
                lib.name,
                attempt,
                self.policy.max_attempts,
            )
            return Decision.CONTINUE

        return on_failure

    def ensure_libraries(
        self, libraries: Sequence[Union[str, LibraryDependency]]
    ) -> Resolution:
        """probe and, where needed, acquire each library in order

        Raises:
            DependencyError: If a library cannot be acquired and skipping it
                was declined
        """
        self.log.info("Checking and downloading required libraries...")
        self.toolchain.ensure_downloads()
        libs = [
            lib if isinstance(lib, LibraryDependency) else LibraryDependency(lib)
            for lib in libraries
        ]
        for lib in libs:
            self._resolve(lib)
        return Resolution(libs)

    def ensure_library(self, name: str) -> LibraryDependency:
        """acquire one library the build reported as missing (no probe)"""
        self.toolchain.ensure_downloads()
        lib = LibraryDependency(name)
        self._acquire(lib)
        return lib

    def probe(self, library: str) -> bool:
        """run `build-library <lib>`; True when the library must be downloaded"""
        classifier = OutputClassifier()
        with self.toolchain.start(
            "build-library", library, timeout=self.probe_timeout
        ) as proc:
            for line in proc.lines():
                if isinstance(classifier.feed(line), DependencyMissing):
                    return True
                self.out.info(line)
            code = proc.wait()
        if code != 0:
            self.log.info("build-library %s exited with %d", library, code)
        return code != 0

    def _resolve(self, lib: LibraryDependency) -> None:
        self.log.info("Checking library: %s", lib.name)
        outcome = self.policy.run(
            lambda: self.probe(lib.name), on_failure=self._log_failure(lib, "checking")
        )
        if not outcome.ok:
            lib.attempts += outcome.state.attempt
            lib.state = LibraryState.FAILED
            lib.error = outcome.error
            self._give_up(lib)
        elif outcome.value:
            self._acquire(lib)
        else:
            lib.state = LibraryState.PRESENT
            self.log.debug("%s is present", lib.name)

    def _acquire(self, lib: LibraryDependency) -> None:
        for method in self.methods:
            lib.state = LibraryState.DOWNLOADING
            self.log.info("Attempting %s of %s...", method.name, lib.name)
            outcome = self.policy.run(
                lambda: method.acquire(self.toolchain, lib.name),
                on_failure=self._log_failure(lib, method.name),
            )
            lib.attempts += outcome.state.attempt
            if outcome.ok:
                lib.state = LibraryState.DOWNLOADED
                self.log.info("Successfully downloaded %s", lib.name)
                return
            lib.state = LibraryState.FAILED
            lib.error = outcome.error
            self.log.warning("%s failed for %s", method.name, lib.name)
        self._give_up(lib)

    def _give_up(self, lib: LibraryDependency) -> None:
        message = f"Failed to acquire {lib.name} after {lib.attempts} attempts"
        if self.allow_missing or self.prompt.confirm(f"{message}. Continue without it?"):
            self.log.warning("%s, continuing without it", message)
            return
        error = lib.error
        raise DependencyError(
            f"Cannot continue without {lib.name}: {error}" if error else message,
            command=error.command if error else None,
            output_tail=error.output_tail if error else None,
            library=lib.name,
        ) from error

    def prepare_sources(self, libraries: Sequence[str]) -> Resolution:
        """download and extract each library's sources; on windows also build them

        Raises:
            DependencyError: If a library cannot be prepared and skipping it
                was declined
        """
        self.toolchain.ensure_downloads()
        if self.toolchain.is_windows:
            self.ensure_php_sdk()
        libs = [LibraryDependency(name) for name in libraries]
        for lib in libs:
            self.log.info("Processing dependency: %s", lib.name)
            lib.state = LibraryState.DOWNLOADING
            outcome = self.policy.run(
                lambda: self._prepare(lib.name),
                on_failure=self._log_failure(lib, "preparing"),
            )
            lib.attempts += outcome.state.attempt
            if outcome.ok:
                lib.state = LibraryState.DOWNLOADED
            else:
                lib.state = LibraryState.FAILED
                lib.error = outcome.error
                self._give_up(lib)
        return Resolution(libs)

    def _prepare(self, library: str) -> None:
        for step in ("download", "extract"):
            result = self.toolchain.run(
                step, library, timeout=self.download_timeout, echo=self.out.info
            )
            if not result.ok:
                raise CommandError(
                    f"Failed to {step} {library}",
                    command=result.args,
                    output_tail=result.tail,
                    library=library,
                )
        if self.toolchain.is_windows:
            self._build_with_sdk(library)

    def ensure_php_sdk(self) -> None:
        if self.sdk_dir.exists():
            return
        self.log.info("Downloading PHP SDK...")
        try:
            self.toolchain.git_clone(self.sdk_url, directory=self.sdk_dir)
        except CommandError as e:
            raise DependencyError(f"Could not clone the PHP SDK: {e}", command=e.command) from e

    def _build_with_sdk(self, library: str) -> None:
        args = [
            str(self.sdk_dir / "phpsdk-vs17-x64.bat"),
            "-t",
            str(self.toolchain.source / "wrapper.bat"),
            "--task-args",
            "--build build --config Release --target install -j8",
        ]
        result = self.toolchain.runner.run(
            args,
            cwd=self.toolchain.source / library,
            env=self.toolchain.env,
            timeout=LIBRARY_BUILD_TIMEOUT,
            echo=self.out.info,
        )
        if not result.ok:
            raise CommandError(
                f"Failed to build {library}",
                command=result.args,
                output_tail=result.tail,
                library=library,
            )


# ----------------------------------------------------------------------------
# artifact packager


class ArtifactPackager:
    """Zips the built binary under its canonical name"""

    def __init__(self, compression: int = zipfile.ZIP_DEFLATED) -> None:
        self.compression = compression
        self.log = logging.getLogger(self.__class__.__name__)

    @staticmethod
    def archive_path(
        dist_root: Pathlike, target_os: str, arch: str, php_version: str
    ) -> Path:
        """{dist_root}/{os}/{arch}/php-{version}.zip"""
        return Path(dist_root) / target_os / arch / f"php-{php_version}.zip"

    def package(
        self,
        binary_path: Pathlike,
        archive_path: Pathlike,
        binary_name: Optional[str] = None,
    ) -> Path:
        """write a single-entry archive holding the binary

        Raises:
            PackagingError: If the binary is missing or the archive cannot be
                written; no archive is left behind in either case
        """
        binary = Path(binary_path)
        archive = Path(archive_path)
        name = binary_name or binary.name
        if not binary.is_file():
            raise PackagingError(f"Binary file not found at {binary}")
        try:
            archive.parent.mkdir(parents=True, exist_ok=True)
            with zipfile.ZipFile(archive, "w", compression=self.compression) as zf:
                zf.write(binary, arcname=name)
        except OSError as e:
            if archive.is_file():
                archive.unlink()
            raise PackagingError(f"Failed to create zip at {archive}: {e}") from e
        self.log.info("Zipped to %s", archive)
        return archive


# ----------------------------------------------------------------------------
# build driver


class PhpBuilder(ShellCmd):
    """Drives one BuildRequest through its stages.

    INIT -> ENSURE_TOOLCHAIN -> RESOLVE_DEPENDENCIES -> ACQUIRE_SOURCE
    -> COMPILE -> PACKAGE -> DONE

    `process()` never raises a BuildError: any failure ends in a Failure
    result carrying the error and the stage it happened in.
    """

    stages = [
        (Stage.INIT, "validate"),
        (Stage.ENSURE_TOOLCHAIN, "ensure_toolchain"),
        (Stage.RESOLVE_DEPENDENCIES, "resolve_dependencies"),
        (Stage.ACQUIRE_SOURCE, "acquire_source"),
        (Stage.COMPILE, "compile"),
        (Stage.PACKAGE, "package"),
    ]

    def __init__(
        self,
        request: BuildRequest,
        options: Optional[BuildOptions] = None,
        prompt: Optional[Prompt] = None,
        runner: Optional[ProcessRunner] = None,
        toolchain: Optional[Toolchain] = None,
        resolver: Optional[DependencyResolver] = None,
        packager: Optional[ArtifactPackager] = None,
        catalog: Sequence[str] = EXTENSIONS,
    ) -> None:
        self.request = request
        self.options = options or BuildOptions()
        self.prompt = prompt or AutoPrompt(self.options.allow_missing)
        self.runner = runner or ProcessRunner()
        self.toolchain = toolchain or Toolchain(
            request.toolchain_path, request.target_os, runner=self.runner
        )
        self.resolver = resolver or DependencyResolver(
            self.toolchain,
            policy=RetryPolicy(self.options.max_attempts, self.options.retry_delay),
            prompt=self.prompt,
            allow_missing=self.options.allow_missing,
            probe_timeout=self.options.probe_timeout,
            download_timeout=self.options.download_timeout,
        )
        self.packager = packager or ArtifactPackager()
        self.catalog = list(catalog)
        self.stage = Stage.INIT
        self.restarts: Counter[str] = Counter()
        self.last_tail: list[str] = []
        self.resolution: Optional[Resolution] = None
        self.artifact: Optional[Path] = None
        self.log = logging.getLogger(self.__class__.__name__)
        self.out = logging.getLogger("toolchain")

    def __repr__(self) -> str:
        return (
            f"<{self.__class__.__name__} 'php-{self.request.php_version}' "
            f"{self.request.sapi} [{self.request.extension_list}]>"
        )

    @property
    def binary(self) -> Path:
        return self.toolchain.bin_dir / self.request.binary_name

    @property
    def source_archive(self) -> Path:
        return self.toolchain.downloads / f"php-{self.request.php_version}.tar.xz"

    def build_command(self) -> list[str]:
        args = ["build", self.request.extension_list, f"--build-{self.request.sapi}"]
        if self.request.upx:
            args.append("--with-upx-pack")
        return self.toolchain.command(*args)

    def process(self) -> BuildResult:
        """main builder process"""
        for stage, step in self.stages:
            self.stage = stage
            self.log.debug("stage: %s", stage.value)
            try:
                getattr(self, step)()
            except BuildError as e:
                self.log.error("%s failed: %s", stage.value, e.details())
                self.stage = Stage.DONE
                return BuildResult(BuildStatus.FAILURE, failure_reason=e, stage=stage)
        self.stage = Stage.DONE
        self.log.info("Build successful! %s", self.artifact)
        return BuildResult(BuildStatus.SUCCESS, artifact_path=self.artifact)

    def validate(self) -> None:
        """check the request and the host before anything is spawned"""
        self.request.validate(self.catalog)
        if self.request.target_os == "Windows" and PLATFORM_INFO.is_windows:
            if not Path(VSWHERE).exists():
                raise BuildEnvironmentError(
                    "Install Visual Studio 2022 with C++ workload and SDKs."
                )
        self.log.info("Detected operating system: %s", self.request.target_os)

    def ensure_toolchain(self) -> None:
        if not self.toolchain.exists():
            if shutil.which("git") is None:
                raise BuildEnvironmentError("git is required to install static-php-cli")
            self.toolchain.bootstrap()
        self.toolchain.ensure_windows_binary(
            self.options.spc_search_paths
            or [Path.cwd() / "spc.exe", Path.cwd() / "nativephp-php-custom" / "spc.exe"]
        )

    def resolve_dependencies(self) -> None:
        resolution = self.resolver.ensure_libraries(self.options.required_libraries)
        if self.options.core_dependencies:
            resolution = resolution.merge(
                self.resolver.prepare_sources(self.options.core_dependencies)
            )
        self.resolution = resolution
        if resolution.degraded:
            missing = ", ".join(resolution.missing)
            if not self.options.compile_when_degraded:
                raise DependencyError(
                    f"Failed to prepare all required dependencies (missing: {missing})",
                    library=resolution.missing[0],
                )
            self.log.warning("building without: %s", missing)

    def acquire_source(self) -> None:
        if self.source_archive.exists():
            self.log.info("Using php source %s", self.source_archive)
            return
        self.log.info("Downloading PHP %s...", self.request.php_version)
        self.toolchain.ensure_downloads()
        url = PHP_DIST_URL.format(archive=self.source_archive.name)
        self.download(url, tofolder=self.toolchain.downloads)

    def compile(self) -> None:
        """run the build, restarting it once a reported missing library is fetched"""
        command = self.build_command()
        self.log.info("Building PHP with: %s...", self.request.extension_list)
        while True:
            missing = self._run_build(command)
            if missing is None:
                return
            self._recover(missing, command)

    def _run_build(self, command: list[str]) -> Optional[DependencyMissing]:
        classifier = OutputClassifier()
        try:
            with self.runner.start(
                command,
                cwd=self.toolchain.path,
                env=self.toolchain.env,
                timeout=self.options.build_timeout,
            ) as proc:
                for line in proc.lines():
                    self.out.info(line)
                    signal = classifier.feed(line)
                    if isinstance(signal, DependencyMissing):
                        # the run is doomed; leaving the block terminates it
                        self.log.warning(
                            "build reported %s as missing, stopping this run",
                            signal.library or "a library",
                        )
                        self.last_tail = list(proc.tail)
                        return signal
                code = proc.wait()
        except CommandTimeout as e:
            raise CompileError(
                f"Build timed out after {self.options.build_timeout}s",
                command=command,
                output_tail=e.output_tail,
            ) from e
        except CommandError as e:
            raise CompileError(str(e), command=command, output_tail=e.output_tail) from e
        if code != 0:
            raise CompileError(
                f"Build failed with exit status {code}",
                command=command,
                output_tail=list(proc.tail),
            )
        return None

    def _recover(self, signal: DependencyMissing, command: list[str]) -> None:
        tail = self.last_tail
        library = signal.library
        if not library:
            raise CompileError(
                "Build reported a missing dependency without naming the library",
                command=command,
                output_tail=tail,
            )
        if self.restarts[library] >= self.options.max_restarts_per_library:
            raise CompileError(
                f"{library} still missing after "
                f"{self.restarts[library]} restart(s) of the build",
                command=command,
                output_tail=tail,
                library=library,
            )
        self.restarts[library] += 1
        lib = self.resolver.ensure_library(library)
        if not lib.available:
            raise DependencyError(
                f"Cannot restart the build without {library}", library=library
            )
        self.log.info(
            "restarting build from scratch (%s, restart %d)",
            library,
            self.restarts[library],
        )

    def package(self) -> None:
        self.log.info("Binary at: %s", self.binary)
        self.artifact = self.packager.package(
            self.binary, self.request.archive_path, self.request.binary_name
        )
        if self.request.sapi == "micro":
            if self.request.target_os == "Windows":
                self.log.info("copy /b %s + your-app.php app.exe", self.binary)
            else:
                self.log.info(
                    "cat %s your-app.php > app && chmod +x app", self.binary
                )

    def dry_run(self) -> None:
        """Display build plan without actually building."""
        print("\n" + "=" * 60)
        print("BUILD PLAN (dry-run)")
        print("=" * 60)

        print("\n[Build Target]")
        print(f"  PHP version:       {self.request.php_version}")
        print(f"  SAPI:              {self.request.sapi}")
        print(f"  Platform:          {self.request.target_os} ({self.request.arch})")
        print(f"  UPX:               {self.request.upx}")

        print("\n[Directories]")
        print(f"  Toolchain:         {self.toolchain.path}")
        print(f"  Downloads:         {self.toolchain.downloads}")
        print(f"  Binary:            {self.binary}")
        print(f"  Archive:           {self.request.archive_path}")

        print("\n[Command]")
        print(f"  {shlex.join(self.build_command())}")

        print(f"\n[Extensions] ({len(self.request.extensions)})")
        for ext in self.request.extensions:
            print(f"  {ext}")

        print(f"\n[Libraries] ({len(self.options.required_libraries)})")
        for lib in self.options.required_libraries:
            print(f"  {lib}")

        print("\n" + "=" * 60)
        print("End of build plan. No changes were made.")
        print("=" * 60 + "\n")


# ----------------------------------------------------------------------------
# commandline


def parse_selection(text: str, catalog: Sequence[str]) -> list[str]:
    """turn '3, 9' or 'curl,mbstring' into extension ids; unknown entries are dropped"""
    selected: list[str] = []
    for item in (part.strip() for part in text.split(",")):
        if item.isdigit() and int(item) < len(catalog):
            ext = catalog[int(item)]
        elif item in catalog:
            ext = item
        else:
            continue
        if ext not in selected:
            selected.append(ext)
    return selected


def main(argv: Optional[Sequence[str]] = None) -> None:
    """commandline api entrypoint"""

    parser = argparse.ArgumentParser(
        prog="buildphp",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description="Builds a static php binary with static-php-cli",
    )
    opt = parser.add_argument

    # fmt: off
    opt("-v", "--version", help="php version (default: prompt, else newest)")
    opt("-e", "--extensions", help="comma separated extension names or indexes", metavar="EXT")
    opt("-p", "--path", help="path to static-php-cli installation")
    opt("-s", "--sapi", help="sapi to build (default: %(default)s)", choices=SAPIS, default="cli")
    opt("-u", "--upx", help="enable upx compression", action="store_true")
    opt("-d", "--dist", help="archive root directory")
    opt("-c", "--config", help="json settings file", metavar="JSON")
    opt("-r", "--restarts", help="build restarts per missing library (default: %(default)s)", type=int, default=1)
    opt("-y", "--yes", help="continue without libraries that cannot be downloaded", action="store_true")
    opt("--no-input", help="never prompt, take defaults", action="store_true")
    opt("--compile-degraded", help="build even when libraries were skipped", action="store_true")
    opt("-n", "--dry-run", help="show build plan without building", action="store_true")
    opt("-l", "--list", help="list php versions and extensions", action="store_true")
    opt("-V", "--about", help="show program version", action="version", version=f"%(prog)s {__version__}")
    # fmt: on

    args = parser.parse_args(argv)
    log = logging.getLogger("buildphp")

    try:
        settings = Settings.from_json(args.config) if args.config else Settings()
    except ValidationError as e:
        log.error("%s", e)
        sys.exit(1)

    catalog = settings.available_extensions
    versions = settings.versions_newest_first()

    if args.list:
        print("PHP versions:")
        for version in versions:
            print(f"  {version}")
        print("Available PHP extensions:")
        for i, ext in enumerate(catalog):
            print(f"  [{i}] {ext}")
        sys.exit(0)

    prompt: Prompt = AutoPrompt(args.yes) if args.no_input else ConsolePrompt()
    default_version = DEFAULT_PHP_VERSION if DEFAULT_PHP_VERSION in versions else versions[0]
    version = args.version or prompt.choice(
        "Which PHP version would you like to build?", versions, default_version
    )

    if args.extensions is None:
        if args.no_input:
            log.error("--extensions is required with --no-input")
            sys.exit(1)
        print("Available PHP extensions:")
        for i, ext in enumerate(catalog):
            print(f"[{i}] {ext}")
        text = prompt.ask(
            "Enter the numbers of the extensions to install, separated by commas"
        )
        if not text:
            log.warning("No extensions selected.")
            sys.exit(0)
        extensions = parse_selection(text, catalog)
        if not extensions:
            log.warning("No valid extensions selected.")
            sys.exit(0)
    else:
        extensions = [ext.strip() for ext in args.extensions.split(",") if ext.strip()]

    try:
        target_os = PLATFORM_INFO.check()
    except BuildEnvironmentError as e:
        log.error("%s", e)
        sys.exit(1)

    options = settings.build_options()
    options.allow_missing = args.yes
    options.compile_when_degraded = args.compile_degraded
    options.max_restarts_per_library = args.restarts

    request = BuildRequest(
        php_version=version,
        extensions=extensions,
        sapi=args.sapi,
        target_os=target_os,
        toolchain_path=Path(args.path or settings.default_path),
        upx=args.upx,
        dist_root=Path(args.dist or settings.dist_root),
    )
    builder = PhpBuilder(request, options=options, prompt=prompt, catalog=catalog)

    if args.dry_run:
        builder.dry_run()
        sys.exit(0)

    result = builder.process()
    sys.exit(0 if result.ok else 1)


if __name__ == "__main__":
    main()
