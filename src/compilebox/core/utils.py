from __future__ import annotations
import uuid
from pathlib import Path, PurePath, PureWindowsPath


def new_request_id() -> str:
    return uuid.uuid4().hex


def new_workspace_id() -> str:
    return uuid.uuid4().hex


def to_engine_path(path: PurePath) -> str:
    """
    Docker bind mounts want a posix absolute path, whatever the host is.
    C:\\work\\temp\\abc -> /c/work/temp/abc ; /srv/temp/abc stays as is.
    """
    if isinstance(path, Path):
        path = path.resolve()
    win = PureWindowsPath(path)
    if win.drive and win.drive.endswith(":"):
        drive = win.drive[0].lower()
        return "/" + drive + "/" + "/".join(win.parts[1:])
    return PurePath(path).as_posix()
