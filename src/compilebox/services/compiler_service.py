from __future__ import annotations
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Mapping, Optional, Union

import docker
import structlog

from ..core.compilers import get_compiler
from ..core.errors import MalformedRequestError
from ..core.models import ContainerStatus, ExecutionProfile, SandboxRequest
from ..core.schemas import (
    CompileMultipleTestsSourceRequest,
    CompileRequest,
    CompileResponseBase,
    CompileSourceRequest,
    CompileTestSourceRequest,
    parse_request,
)
from ..settings import Settings, load_settings
from .events import EventRouter
from .multiple_tests import MultipleTestsOrchestrator
from .publisher import LogPublisher, Publisher
from .registry import SandboxRegistry
from .sandbox import Sandbox
from .single_test import SingleTestSandbox
from .workspace import WorkspaceManager

log = structlog.get_logger(__name__)


def docker_client(settings: Settings) -> Any:
    if settings.docker_base_url:
        return docker.DockerClient(base_url=settings.docker_base_url)
    return docker.from_env()


class CompilerService:
    """
    Worker host: registry + event router + thread pool, one sandbox per run.
    Every ``handle_*`` returns a future of the response; the response is also
    handed to the publisher. A request that could not be brought up fails its
    future and publishes nothing.
    """

    def __init__(self, settings: Optional[Settings] = None, client: Any = None,
                 publisher: Optional[Publisher] = None):
        self.settings = settings or load_settings()
        self.client = client if client is not None else docker_client(self.settings)
        self.publisher: Publisher = publisher or LogPublisher()

        self.registry = SandboxRegistry()
        self.router = EventRouter(self.client, self.registry)
        self.workspaces = WorkspaceManager(
            self.settings.workspace_root,
            self.settings.driver_script,
            self.settings.max_output_lines,
        )
        self.executor = ThreadPoolExecutor(
            max_workers=self.settings.max_workers, thread_name_prefix="compilebox-sandbox"
        )

    # ---------------- lifecycle ----------------

    def start(self) -> None:
        self.router.start()
        log.info("compiler_service_started", workspace_root=str(self.workspaces.root),
                 max_workers=self.settings.max_workers)

    def stop(self) -> None:
        self.router.stop()
        for sandbox in self.registry.snapshot():
            sandbox.stop()
        self.executor.shutdown(wait=False)
        log.info("compiler_service_stopped")

    # ---------------- sandboxes ----------------

    def create_sandbox(self, request: SandboxRequest) -> Sandbox:
        sandbox = Sandbox(
            self.client,
            request,
            self.workspaces,
            registry=self.registry,
            stop_grace_seconds=self.settings.stop_grace_seconds,
            executor=self.executor,
        )
        sandbox.add_status_listener(self._on_status_change)
        sandbox.completed.add_done_callback(lambda _: self.registry.remove(sandbox))
        return sandbox

    def _on_status_change(self, sandbox: Sandbox, status: ContainerStatus) -> None:
        log.info("container_status", request_id=sandbox.id, container_id=sandbox.container_id,
                 status=status.value)

    def _sandbox_request(self, request: Union[CompileSourceRequest, CompileTestSourceRequest],
                         profile: ExecutionProfile) -> SandboxRequest:
        if isinstance(request, CompileTestSourceRequest):
            stdin = request.test_case.standard_input if request.test_case else []
        else:
            stdin = request.standard_input
        return SandboxRequest(
            id=request.id,
            profile=profile,
            source_code=list(request.source_code),
            stdin_data=list(stdin),
            timeout_seconds=request.timeout_seconds,
            memory_mb=request.memory_constraint,
        )

    # ---------------- handlers ----------------

    def handle_compile(self, request: CompileSourceRequest) -> Future:
        profile = get_compiler(request.compiler_name)
        sandbox = self.create_sandbox(self._sandbox_request(request, profile))
        return self._submit(sandbox)

    def handle_single_test(self, request: CompileTestSourceRequest) -> Future:
        profile = get_compiler(request.compiler_name)
        sandbox = SingleTestSandbox(
            self.create_sandbox(self._sandbox_request(request, profile)), request.test_case
        )
        return self._submit(sandbox)

    def handle_multiple_tests(self, request: CompileMultipleTestsSourceRequest) -> Future:
        profile = get_compiler(request.compiler_name)
        orchestrator = MultipleTestsOrchestrator(
            request,
            profile,
            self.create_sandbox,
            self.executor,
            dispatch_delay_ms=self.settings.parallel_dispatch_delay_ms,
        )
        orchestrator.completed.add_done_callback(self._publish)
        return orchestrator.start()

    def handle(self, request: CompileRequest) -> Future:
        log.info("request_received", request_id=request.id, kind=request.type.value,
                 compiler=request.compiler_name)
        if isinstance(request, CompileMultipleTestsSourceRequest):
            return self.handle_multiple_tests(request)
        if isinstance(request, CompileTestSourceRequest):
            return self.handle_single_test(request)
        if isinstance(request, CompileSourceRequest):
            return self.handle_compile(request)
        raise MalformedRequestError(f"unsupported_request:{type(request).__name__}")

    def handle_message(self, raw: Union[bytes, str, Mapping[str, Any]]) -> Future:
        """Queue entry point: decode, validate the compiler, dispatch by kind."""
        return self.handle(parse_request(raw, defaults=self.request_defaults()))

    def request_defaults(self) -> Mapping[str, Any]:
        return {
            "timeout_seconds": self.settings.default_timeout_seconds,
            "memory_constraint": self.settings.default_memory_mb,
        }

    def _submit(self, sandbox: Union[Sandbox, SingleTestSandbox]) -> Future:
        sandbox.completed.add_done_callback(self._publish)
        # run() failures are already logged and set on sandbox.completed
        self.executor.submit(sandbox.run)
        return sandbox.completed

    def _publish(self, future: Future) -> None:
        error = future.exception()
        if error is not None:
            log.error("request_failed", error=str(error))
            return
        response: CompileResponseBase = future.result()
        try:
            self.publisher.publish(response)
        except Exception:
            log.exception("publish_failed", request_id=response.id)
