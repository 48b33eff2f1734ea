from __future__ import annotations
import threading
from typing import Dict, List, Optional, Union

from .sandbox import Sandbox


class SandboxRegistry:
    """Executing sandboxes keyed by container id. Safe for concurrent readers/writers."""

    def __init__(self):
        self._lock = threading.Lock()
        self._sandboxes: Dict[str, Sandbox] = {}

    def add(self, sandbox: Sandbox) -> None:
        if not sandbox.container_id:
            raise ValueError("sandbox has no container id yet")
        with self._lock:
            self._sandboxes[sandbox.container_id] = sandbox

    def remove(self, sandbox: Union[Sandbox, str]) -> Optional[Sandbox]:
        container_id = sandbox if isinstance(sandbox, str) else sandbox.container_id
        if not container_id:
            return None
        with self._lock:
            return self._sandboxes.pop(container_id, None)

    def get(self, container_id: str) -> Optional[Sandbox]:
        with self._lock:
            return self._sandboxes.get(container_id)

    def snapshot(self) -> List[Sandbox]:
        with self._lock:
            return list(self._sandboxes.values())

    def __contains__(self, container_id: str) -> bool:
        with self._lock:
            return container_id in self._sandboxes

    def __len__(self) -> int:
        with self._lock:
            return len(self._sandboxes)
