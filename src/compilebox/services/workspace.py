from __future__ import annotations
import shutil
from itertools import islice
from pathlib import Path
from typing import Iterable, List

import structlog

from ..core.models import ExecutionProfile
from ..core.utils import new_workspace_id

log = structlog.get_logger(__name__)

OUTPUT_SENTINEL = "*-COMPILE::EOF-*"
DRIVER_SCRIPT_NAME = "script.sh"


class WorkspaceManager:
    """
    Per-execution directories, mounted into the container at /input:
      <root>/<language>/<id>/
        ├─ <language>.source
        ├─ <language>.input
        ├─ <stdout file>     (pre-created, empty)
        ├─ <stderr file>     (pre-created, empty)
        └─ script.sh         (driver)
    """

    def __init__(self, root: Path, driver_script: Path, max_output_lines: int = 50):
        # always absolute, the path ends up as a bind mount source
        self.root = root if root.is_absolute() else root.resolve()
        self.driver_script = driver_script
        self.max_output_lines = max_output_lines

    def allocate(self, language: str) -> Path:
        """Fresh, not yet created, directory path for one sandbox."""
        return self.root / language / new_workspace_id()

    def prepare(self, path: Path, profile: ExecutionProfile, source_code: Iterable[str],
                stdin_data: Iterable[str]) -> None:
        # exist_ok=False: a workspace is never shared or reused
        path.mkdir(parents=True, exist_ok=False)

        (path / profile.source_file).write_text("\n".join(source_code), encoding="utf-8")
        (path / profile.input_file).write_text("\n".join(stdin_data), encoding="utf-8")

        # the driver appends to these, they must exist up front
        for name in (profile.stdout_file, profile.stderr_file):
            (path / name).touch()

        shutil.copyfile(self.driver_script, path / DRIVER_SCRIPT_NAME)
        log.debug("workspace_prepared", path=str(path), language=profile.language)

    def read_lines(self, path: Path, file_name: str) -> List[str]:
        """
        Read at most ``max_output_lines`` lines. When the window is full and its
        last line is not the sentinel, the real last line of the file is appended
        so the caller sees both the truncation and how the output ended.
        """
        target = path / file_name
        if not target.exists():
            return []

        limit = self.max_output_lines
        with open(target, "r", encoding="utf-8", errors="replace") as f:
            lines = [line.rstrip("\r\n") for line in islice(f, limit)]
            if len(lines) == limit and not lines[-1].startswith(OUTPUT_SENTINEL):
                last = lines[-1]
                for line in f:
                    last = line.rstrip("\r\n")
                lines.append(last)
        return lines

    def cleanup(self, path: Path) -> bool:
        if not path.exists():
            return False
        shutil.rmtree(path)
        log.debug("workspace_removed", path=str(path))
        return True
