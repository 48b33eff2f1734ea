from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class ContainerStatus(str, Enum):
    UNKNOWN = "Unknown"
    CREATED = "Created"
    STARTED = "Started"
    KILLING = "Killing"
    KILLED = "Killed"
    REMOVED = "Removed"


class SandboxResponseResult(str, Enum):
    UNKNOWN = "Unknown"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"


class SandboxResponseStatus(str, Enum):
    UNKNOWN = "Unknown"
    PENDING = "Pending"
    RUNNING = "Running"
    FINISHED = "Finished"
    MEMORY_CONSTRAINT_EXCEEDED = "MemoryConstraintExceeded"
    TIME_LIMIT_EXCEEDED = "TimeLimitExceeded"
    TEST_FAILED = "TestFailed"


class TestVerdict(str, Enum):
    PASSED = "Passed"
    FAILED = "Failed"
    NOT_RAN = "NotRan"


class RequestKind(str, Enum):
    COMPILE = "Compile"
    SINGLE_TEST = "SingleTest"
    MULTIPLE_TESTS = "MultipleTests"


# engine event name -> lifecycle status
EVENT_TRANSITIONS = {
    "create": ContainerStatus.CREATED,
    "start": ContainerStatus.STARTED,
    "kill": ContainerStatus.KILLING,
    "die": ContainerStatus.KILLED,
    "destroy": ContainerStatus.REMOVED,
}

OOM_EVENT = "oom"


@dataclass(frozen=True)
class ExecutionProfile:
    language: str           # "python" | "javascript" | ...
    entry: str              # binary called inside the image (python, node, gcc ...)
    interpreter: bool       # True -> no separate compile step
    additional_arguments: str
    image: str              # docker image, e.g. virtual_machine_python
    stdout_file: str = "standard.out"
    stderr_file: str = "error.out"

    @property
    def source_file(self) -> str:
        return f"{self.language}.source"

    @property
    def input_file(self) -> str:
        return f"{self.language}.input"

    @property
    def output_binary(self) -> str:
        return f"{self.language}.out.o"


@dataclass
class SandboxState:
    container_id: Optional[str] = None
    status: ContainerStatus = ContainerStatus.UNKNOWN
    exceeded_timeout: bool = False
    exceeded_memory: bool = False


@dataclass
class SandboxRequest:
    """Everything one container run needs, already resolved against the registry."""
    id: str
    profile: ExecutionProfile
    source_code: List[str]
    stdin_data: List[str] = field(default_factory=list)
    timeout_seconds: float = 2
    memory_mb: int = 128

