from collections import deque

import pytest

from buildphp import ProcessRunner, RetryPolicy, Toolchain


class FakeHandle:
    """Stands in for ProcessHandle: replays canned output and exit status"""

    def __init__(self, args, lines=(), returncode=0, error=None):
        self.args = list(args)
        self._lines = list(lines)
        self.returncode = returncode
        self.error = error
        self.tail = deque(maxlen=40)
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.closed = True

    def lines(self):
        for line in self._lines:
            self.tail.append(line)
            yield line
        if self.error:
            raise self.error

    def wait(self):
        if self.error:
            raise self.error
        return self.returncode


class FakeRunner(ProcessRunner):
    """Replays scripted outcomes keyed by the spc subcommand, e.g. 'download curl'

    An outcome is a (lines, returncode) tuple or an exception raised while
    reading output. The last outcome of a key repeats; unknown keys succeed
    silently.
    """

    def __init__(self):
        super().__init__(poll_interval=0)
        self.script = {}
        self.calls = []
        self.handles = []
        self.open_at_start = []

    def expect(self, key, *outcomes):
        self.script[key] = list(outcomes)

    @staticmethod
    def key(args):
        return " ".join(args[1:])

    def start(self, args, cwd=None, env=None, timeout=None):
        args = [str(arg) for arg in args]
        self.calls.append((args, cwd, env, timeout))
        self.open_at_start.append(sum(not handle.closed for handle in self.handles))
        outcomes = self.script.get(self.key(args))
        if not outcomes:
            outcome = ([], 0)
        elif len(outcomes) > 1:
            outcome = outcomes.pop(0)
        else:
            outcome = outcomes[0]
        if isinstance(outcome, BaseException):
            handle = FakeHandle(args, error=outcome)
        else:
            lines, code = outcome
            handle = FakeHandle(args, lines, code)
        self.handles.append(handle)
        return handle

    def commands(self):
        return [self.key(args) for args, *_ in self.calls]

    def count(self, prefix):
        return sum(1 for command in self.commands() if command.startswith(prefix))


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def toolchain(tmp_path, runner):
    path = tmp_path / "static-php-cli"
    path.mkdir()
    return Toolchain(path, target_os="Linux", runner=runner)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def policy(sleeps):
    return RetryPolicy(max_attempts=3, delay=2, sleep=sleeps.append)
