"""
Runs a program against a list of test cases, one sandbox per test.

Sequential mode starts test ``i + 1`` from the completion of test ``i`` and
stops at the first non-passing verdict unless ``run_all`` is set. Parallel mode
dispatches everything up front, spaced by a small delay, and finalizes once
every test has either reported or failed to dispatch. Tests that never ran are
reported as ``NotRan``.
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import Executor, Future
from enum import Enum
from functools import partial
from typing import Callable, Dict, List, Optional

import structlog

from ..core.errors import SandboxStateError
from ..core.models import (
    ExecutionProfile,
    SandboxRequest,
    SandboxResponseResult,
    SandboxResponseStatus,
    TestVerdict,
)
from ..core.schemas import (
    CompileMultipleTestsSourceRequest,
    CompileMultipleTestsSourceResponse,
    CompileTestSourceResponse,
    TestCase,
    TestCaseResult,
)
from .sandbox import Sandbox
from .single_test import SingleTestSandbox

log = structlog.get_logger(__name__)

SandboxFactory = Callable[[SandboxRequest], Sandbox]


class OrchestratorState(str, Enum):
    IDLE = "Idle"
    DISPATCHING = "Dispatching"
    FINALIZED = "Finalized"


def not_ran(request_id: str, test_case: TestCase) -> CompileTestSourceResponse:
    return CompileTestSourceResponse(
        id=request_id,
        result=SandboxResponseResult.FAILED,
        status=SandboxResponseStatus.FINISHED,
        test_case_result=TestCaseResult(id=test_case.id, result=TestVerdict.NOT_RAN),
    )


def summarize(request_id: str, results: List[CompileTestSourceResponse]) -> CompileMultipleTestsSourceResponse:
    """Fold per-test responses (already in test order) into the overall one."""
    failed = False
    status = SandboxResponseStatus.FINISHED
    for r in results:
        verdict = r.test_case_result.result if r.test_case_result else TestVerdict.NOT_RAN
        if r.result is SandboxResponseResult.FAILED or verdict is not TestVerdict.PASSED:
            failed = True
        if (verdict is not TestVerdict.NOT_RAN
                and r.result is not SandboxResponseResult.SUCCEEDED
                and r.status is not SandboxResponseStatus.FINISHED):
            status = r.status

    return CompileMultipleTestsSourceResponse(
        id=request_id,
        result=SandboxResponseResult.FAILED if failed else SandboxResponseResult.SUCCEEDED,
        status=status,
        test_case_results=[r.test_case_result for r in results if r.test_case_result is not None],
    )


class MultipleTestsOrchestrator:
    def __init__(
        self,
        request: CompileMultipleTestsSourceRequest,
        profile: ExecutionProfile,
        sandbox_factory: SandboxFactory,
        executor: Executor,
        dispatch_delay_ms: int = 50,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.request = request
        self.profile = profile
        self._factory = sandbox_factory
        self._executor = executor
        self._dispatch_delay = dispatch_delay_ms / 1000.0
        self._sleep = sleep

        self.completed: Future = Future()
        self.state = OrchestratorState.IDLE

        self._lock = threading.Lock()
        self._results: Dict[int, CompileTestSourceResponse] = {}
        self._settled = 0          # tests that reported or failed to dispatch
        self._current = -1         # highest index handed out so far

    @property
    def id(self) -> str:
        return self.request.id

    @property
    def parallel(self) -> bool:
        return self.request.run_all_parallel

    @property
    def total(self) -> int:
        return len(self.request.test_cases)

    def start(self) -> Future:
        with self._lock:
            if self.state is not OrchestratorState.IDLE:
                raise SandboxStateError(f"orchestrator_already_started:{self.id}")
            self.state = OrchestratorState.DISPATCHING

        log.info("tests_dispatch_started", request_id=self.id, tests=self.total,
                 parallel=self.parallel, run_all=self.request.run_all)

        if self.total == 0:
            log.warning("tests_empty", request_id=self.id)
            self._finalize()
            return self.completed

        if self.parallel:
            for _ in range(self.total):
                with self._lock:
                    index = self._next_index()
                if index is None:
                    break
                self._dispatch(index)
                if index < self.total - 1:
                    self._sleep(self._dispatch_delay)
        else:
            with self._lock:
                index = self._next_index()
            self._dispatch(index)
        return self.completed

    def wait(self, timeout: Optional[float] = None) -> CompileMultipleTestsSourceResponse:
        return self.completed.result(timeout)

    # ---------------- internals ----------------

    def _next_index(self) -> Optional[int]:
        # caller holds the lock
        if self._current + 1 >= self.total:
            return None
        self._current += 1
        return self._current

    def _sandbox_request(self, test_case: TestCase) -> SandboxRequest:
        return SandboxRequest(
            id=self.request.id,
            profile=self.profile,
            source_code=list(self.request.source_code),
            stdin_data=list(test_case.standard_input),
            timeout_seconds=self.request.timeout_seconds,
            memory_mb=self.request.memory_constraint,
        )

    def _dispatch(self, index: int) -> None:
        test_case = self.request.test_cases[index]
        try:
            sandbox = SingleTestSandbox(self._factory(self._sandbox_request(test_case)), test_case)
            sandbox.completed.add_done_callback(partial(self._on_test_completed, index))
            # a failing run() also fails sandbox.completed, which lands in the callback above
            self._executor.submit(sandbox.run)
        except Exception as e:
            failed: Future = Future()
            failed.set_exception(e)
            self._on_test_completed(index, failed)
            return
        log.debug("test_dispatched", request_id=self.id, index=index, test_id=test_case.id)

    def _on_test_completed(self, index: int, future: Future) -> None:
        error = future.exception()
        response: Optional[CompileTestSourceResponse] = None
        if error is not None:
            log.error("test_dispatch_failed", request_id=self.id, index=index, error=str(error))
        else:
            response = future.result()

        next_index: Optional[int] = None
        with self._lock:
            if self.state is OrchestratorState.FINALIZED:
                return
            if response is not None:
                self._results[index] = response
            self._settled += 1

            if self.parallel:
                done = self._settled >= self.total
            else:
                passed = (
                    response is not None
                    and response.test_case_result is not None
                    and response.test_case_result.result is TestVerdict.PASSED
                )
                if passed or (response is not None and self.request.run_all):
                    next_index = self._next_index()
                done = next_index is None

        if next_index is not None:
            self._dispatch(next_index)
        elif done:
            self._finalize()

    def _finalize(self) -> None:
        with self._lock:
            if self.state is OrchestratorState.FINALIZED:
                return
            self.state = OrchestratorState.FINALIZED
            results = [
                self._results.get(i) or not_ran(self.id, test_case)
                for i, test_case in enumerate(self.request.test_cases)
            ]

        response = summarize(self.id, results)
        log.info("tests_finalized", request_id=self.id, tests=self.total,
                 ran=sum(1 for r in results if r.test_case_result.result is not TestVerdict.NOT_RAN),
                 result=response.result.value, status=response.status.value)
        self.completed.set_result(response)
