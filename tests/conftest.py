import queue
from pathlib import Path

import pytest

from compilebox.core.compilers import get_compiler
from compilebox.core.models import SandboxRequest
from compilebox.services.sandbox import Sandbox
from compilebox.services.registry import SandboxRegistry
from compilebox.services.workspace import WorkspaceManager
from compilebox.settings import DEFAULT_DRIVER_SCRIPT

LIFECYCLE = ("create", "start", "die", "destroy")


class FakeContainer:
    def __init__(self, client, container_id, options):
        self.client = client
        self.id = container_id
        self.options = options
        self.started = False

    def start(self):
        if self.client.fail_start is not None:
            raise self.client.fail_start
        self.started = True
        if self.client.on_start is not None:
            self.client.on_start(self)


class FakeContainers:
    def __init__(self, client):
        self.client = client

    def create(self, **options):
        if self.client.fail_create is not None:
            raise self.client.fail_create
        container = FakeContainer(self.client, f"c{len(self.client.created) + 1:04d}", options)
        self.client.created.append(container)
        return container


class FakeApi:
    def __init__(self, client):
        self.client = client

    def stop(self, container_id, timeout=None):
        self.client.stopped.append((container_id, timeout))

    def remove_container(self, container_id, force=False):
        self.client.removed.append((container_id, force))


class FakeEventStream:
    def __init__(self, messages):
        self._q = queue.Queue()
        for m in messages:
            self._q.put(m)
        self._q.put(None)
        self.closed = False

    def __iter__(self):
        while True:
            m = self._q.get()
            if m is None:
                return
            yield m

    def close(self):
        self.closed = True
        self._q.put(None)


class FakeDockerClient:
    """Records create/start/stop/remove; ``events`` hands out whatever was queued with ``emit``."""

    def __init__(self):
        self.created = []
        self.stopped = []
        self.removed = []
        self.fail_create = None
        self.fail_start = None
        self.on_start = None
        self.containers = FakeContainers(self)
        self.api = FakeApi(self)
        self._pending = []
        self.event_calls = []
        self.since_calls = []

    def emit(self, container_id, action, time=None):
        message = {"Type": "container", "Action": action, "Actor": {"ID": container_id}}
        if time is not None:
            message["time"] = time
        self._pending.append(message)

    def events(self, decode=True, filters=None, since=None):
        self.event_calls.append(filters)
        self.since_calls.append(since)
        messages, self._pending = self._pending, []
        return FakeEventStream(messages)


class FakeTimer:
    def __init__(self, interval, function):
        self.interval = interval
        self.function = function
        self.daemon = False
        self.started = False
        self.cancelled = False

    def start(self):
        self.started = True

    def cancel(self):
        self.cancelled = True


def write_output(container, stdout=(), stderr=()):
    """Simulates what the driver script leaves behind in the workspace."""
    workspace = Path(next(iter(container.options["volumes"])))
    stdout_file, stderr_file = container.options["entrypoint"][-2:]
    if stdout:
        (workspace / stdout_file).write_text("\n".join(stdout) + "\n", encoding="utf-8")
    if stderr:
        (workspace / stderr_file).write_text("\n".join(stderr) + "\n", encoding="utf-8")


def drive(sandbox, actions=LIFECYCLE):
    for action in actions:
        sandbox.handle_event(action)


@pytest.fixture
def client():
    return FakeDockerClient()


@pytest.fixture
def workspaces(tmp_path):
    return WorkspaceManager(tmp_path / "temp", DEFAULT_DRIVER_SCRIPT)


@pytest.fixture
def registry():
    return SandboxRegistry()


@pytest.fixture
def timers():
    return []


@pytest.fixture
def make_sandbox(client, workspaces, registry, timers):
    def timer_factory(interval, function):
        t = FakeTimer(interval, function)
        timers.append(t)
        return t

    def _make(source=("print('hi')",), stdin=(), language="python", timeout_seconds=2, memory_mb=128,
              request_id="req-1", executor=None):
        request = SandboxRequest(
            id=request_id,
            profile=get_compiler(language),
            source_code=list(source),
            stdin_data=list(stdin),
            timeout_seconds=timeout_seconds,
            memory_mb=memory_mb,
        )
        return Sandbox(client, request, workspaces, registry=registry, timer_factory=timer_factory,
                       executor=executor)

    return _make
