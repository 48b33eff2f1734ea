"""
One container, one execution.

The lifecycle is driven by two independent sources: engine events routed in by
container id, and a one-shot timeout timer armed on ``start``. Both go through
``handle_event`` / ``_on_timeout`` which serialize on the sandbox lock, so the
state in ``SandboxState`` is only ever written by one caller at a time.

    Unknown -> Created -> Started -> Killing -> Killed -> Removed

``Removed`` is terminal. Reaching it assembles the response, deletes the
workspace and resolves ``completed``, on the injected executor when there is
one so the event thread only ever applies transitions.
"""
from __future__ import annotations

import threading
from concurrent.futures import Executor, Future
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional

import structlog

from ..core.errors import SandboxPreparationError, SandboxStateError
from ..core.models import (
    EVENT_TRANSITIONS,
    OOM_EVENT,
    ContainerStatus,
    SandboxRequest,
    SandboxResponseResult,
    SandboxResponseStatus,
    SandboxState,
)
from ..core.schemas import CompileSourceResponse
from ..core.utils import to_engine_path
from .workspace import DRIVER_SCRIPT_NAME, WorkspaceManager

if TYPE_CHECKING:
    from .registry import SandboxRegistry

log = structlog.get_logger(__name__)

CONTAINER_WORKDIR = "/input"

_ORDER = {
    ContainerStatus.UNKNOWN: 0,
    ContainerStatus.CREATED: 1,
    ContainerStatus.STARTED: 2,
    ContainerStatus.KILLING: 3,
    ContainerStatus.KILLED: 4,
    ContainerStatus.REMOVED: 5,
}

StatusListener = Callable[["Sandbox", ContainerStatus], None]


class Sandbox:
    def __init__(
        self,
        client: Any,
        request: SandboxRequest,
        workspaces: WorkspaceManager,
        *,
        registry: Optional["SandboxRegistry"] = None,
        stop_grace_seconds: int = 1,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
        executor: Optional[Executor] = None,
    ):
        self._client = client            # docker.DockerClient (or anything shaped like it)
        self.request = request
        self.profile = request.profile
        self._workspaces = workspaces
        self._registry = registry
        self._stop_grace_seconds = stop_grace_seconds
        self._timer_factory = timer_factory
        # where completion work runs; None runs it on the caller (event) thread
        self._executor = executor

        self.path: Path = workspaces.allocate(self.profile.language)
        self.completed: Future = Future()

        self._lock = threading.RLock()
        self._state = SandboxState()
        self._timer: Optional[threading.Timer] = None
        self._events: List[Mapping[str, Any]] = []
        self._listeners: List[StatusListener] = []
        self._ran = False
        self._responded = False
        self._cleaned = False
        self._resolved = False

    # ---------------- properties ----------------

    @property
    def id(self) -> str:
        return self.request.id

    @property
    def container_id(self) -> Optional[str]:
        return self._state.container_id

    @property
    def status(self) -> ContainerStatus:
        with self._lock:
            return self._state.status

    @property
    def state(self) -> SandboxState:
        with self._lock:
            return replace(self._state)

    @property
    def events(self) -> List[Mapping[str, Any]]:
        with self._lock:
            return list(self._events)

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    # ---------------- execution ----------------

    def build_command(self) -> List[str]:
        p = self.profile
        return [
            "sh", f"./{DRIVER_SCRIPT_NAME}", p.entry, p.source_file, p.input_file,
            "" if p.interpreter else p.output_binary,
            p.additional_arguments,
            p.stdout_file,
            p.stderr_file,
        ]

    def container_options(self) -> Dict[str, Any]:
        return {
            "image": self.profile.image,
            "entrypoint": self.build_command(),
            "working_dir": CONTAINER_WORKDIR,
            "network_disabled": True,
            "volumes": {to_engine_path(self.path): {"bind": CONTAINER_WORKDIR, "mode": "rw"}},
            "mem_limit": self.request.memory_mb * 1024 * 1024,
            "auto_remove": True,
        }

    def run(self) -> None:
        """
        Prepare the workspace, create and start the container. Everything after
        this point is driven by engine events. Any failure here stops the
        container (if any), removes the workspace, fails ``completed`` and is
        raised to the caller as SandboxPreparationError.
        """
        with self._lock:
            if self._ran:
                raise SandboxStateError(f"sandbox_already_ran:{self.id}")
            self._ran = True

        try:
            self._workspaces.prepare(
                self.path, self.profile, self.request.source_code, self.request.stdin_data
            )
            container = self._client.containers.create(**self.container_options())
            self._assign_container_id(container.id)
            container.start()
            log.info("sandbox_started", request_id=self.id, container_id=self.container_id,
                     language=self.profile.language)
        except Exception as e:
            log.error("sandbox_run_failed", request_id=self.id, container_id=self.container_id,
                      error=str(e))
            if self.container_id:
                self.stop()
                # auto_remove never kicks in for a container that did not start
                self._remove_container()
            self._cleanup()
            error = SandboxPreparationError(f"sandbox_run_failed:{e}")
            self._resolve(error=error)
            raise error from e

    def stop(self) -> bool:
        """Best effort: ask the engine to stop, SIGKILL after the grace period."""
        container_id = self.container_id
        if not container_id:
            return False
        try:
            self._client.api.stop(container_id, timeout=self._stop_grace_seconds)
            return True
        except Exception as e:
            log.error("sandbox_stop_failed", request_id=self.id, container_id=container_id,
                      error=str(e))
            return False

    def _remove_container(self) -> None:
        container_id = self.container_id
        try:
            self._client.api.remove_container(container_id, force=True)
        except Exception as e:
            log.error("sandbox_remove_failed", request_id=self.id, container_id=container_id,
                      error=str(e))

    def wait(self, timeout: Optional[float] = None) -> CompileSourceResponse:
        return self.completed.result(timeout)

    def _assign_container_id(self, container_id: str) -> None:
        with self._lock:
            if self._state.container_id is not None:
                raise SandboxStateError(f"container_id_already_set:{self._state.container_id}")
            self._state.container_id = container_id
        if self._registry is not None:
            self._registry.add(self)

    # ---------------- events ----------------

    def handle_event(self, action: str, message: Optional[Mapping[str, Any]] = None) -> None:
        """Apply one engine event (create/start/kill/die/destroy/oom). Unknown ones are kept but ignored."""
        with self._lock:
            self._events.append(message if message is not None else {"Action": action})

            if action == OOM_EVENT:
                if self._state.status is not ContainerStatus.REMOVED:
                    self._state.exceeded_memory = True
                return

            target = EVENT_TRANSITIONS.get(action)
            if target is None:
                return

            current = self._state.status
            if current is ContainerStatus.REMOVED or _ORDER[target] <= _ORDER[current]:
                log.debug("sandbox_transition_dropped", container_id=self.container_id,
                          current=current.value, action=action)
                return

            self._state.status = target
            if target is ContainerStatus.STARTED:
                self._arm_timer()
            elif target in (ContainerStatus.KILLED, ContainerStatus.REMOVED):
                self._disarm_timer()

        self._notify(target)
        if target is ContainerStatus.REMOVED:
            self._schedule_completion()

    def _schedule_completion(self) -> None:
        # file reads, cleanup and done-callbacks stay off the event thread
        if self._executor is not None:
            try:
                self._executor.submit(self._complete)
                return
            except RuntimeError as e:
                log.warning("sandbox_completion_inline", request_id=self.id, error=str(e))
        self._complete()

    def _notify(self, status: ContainerStatus) -> None:
        log.debug("sandbox_status", request_id=self.id, container_id=self.container_id,
                  status=status.value)
        for listener in list(self._listeners):
            try:
                listener(self, status)
            except Exception:
                log.exception("sandbox_status_listener_failed", container_id=self.container_id)

    # ---------------- timeout ----------------

    def _arm_timer(self) -> None:
        # only called from the start transition, under the lock
        timer = self._timer_factory(float(self.request.timeout_seconds), self._on_timeout)
        timer.daemon = True
        self._timer = timer
        timer.start()

    def _disarm_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timeout(self) -> None:
        with self._lock:
            self._timer = None
            if self._state.status in (ContainerStatus.KILLED, ContainerStatus.REMOVED):
                return
            self._state.exceeded_timeout = True
            status = self._state.status

        log.warning("sandbox_timeout", request_id=self.id, container_id=self.container_id,
                    status=status.value, timeout_seconds=self.request.timeout_seconds)
        self.stop()

    # ---------------- result ----------------

    def get_response(self) -> CompileSourceResponse:
        with self._lock:
            if self._state.status is not ContainerStatus.REMOVED:
                raise SandboxStateError(f"sandbox_not_removed:{self._state.status.value}")
            if self._responded:
                raise SandboxStateError(f"sandbox_response_taken:{self.id}")
            self._responded = True
            state = replace(self._state)

        try:
            if state.exceeded_memory or state.exceeded_timeout:
                status = (
                    SandboxResponseStatus.MEMORY_CONSTRAINT_EXCEEDED
                    if state.exceeded_memory
                    else SandboxResponseStatus.TIME_LIMIT_EXCEEDED
                )
                return CompileSourceResponse(id=self.id, result=SandboxResponseResult.FAILED, status=status)

            stderr = self._workspaces.read_lines(self.path, self.profile.stderr_file)
            if stderr:
                # no point loading stdout
                return CompileSourceResponse(
                    id=self.id,
                    result=SandboxResponseResult.FAILED,
                    status=SandboxResponseStatus.FINISHED,
                    standard_error_output=stderr,
                )

            stdout = self._workspaces.read_lines(self.path, self.profile.stdout_file)
            return CompileSourceResponse(
                id=self.id,
                result=SandboxResponseResult.SUCCEEDED,
                status=SandboxResponseStatus.FINISHED,
                standard_output=stdout,
            )
        finally:
            self._cleanup()

    def _complete(self) -> None:
        if self._resolved:
            # run() already failed this sandbox
            return
        try:
            response = self.get_response()
        except Exception as e:
            log.exception("sandbox_response_failed", request_id=self.id, container_id=self.container_id)
            self._resolve(error=e)
            return
        log.info("sandbox_completed", request_id=self.id, container_id=self.container_id,
                 result=response.result.value, status=response.status.value)
        self._resolve(response=response)

    def _resolve(self, response: Optional[CompileSourceResponse] = None,
                 error: Optional[BaseException] = None) -> None:
        # done-callbacks run in this thread, never under the lock
        with self._lock:
            if self._resolved:
                return
            self._resolved = True
        if error is not None:
            self.completed.set_exception(error)
        else:
            self.completed.set_result(response)

    def _cleanup(self) -> None:
        with self._lock:
            if self._cleaned:
                return
            self._cleaned = True
        try:
            self._workspaces.cleanup(self.path)
        except OSError as e:
            log.error("workspace_cleanup_failed", path=str(self.path), error=str(e))
