from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DRIVER_SCRIPT = Path(__file__).resolve().parent / "runner" / "script.sh"


class Settings(BaseSettings):
    # ---- paths ----
    workspace_root: Path = Path("temp")
    driver_script: Path = DEFAULT_DRIVER_SCRIPT

    # ---- docker ----
    docker_base_url: Optional[str] = None   # None -> DOCKER_HOST / default socket
    stop_grace_seconds: int = 1

    # ---- scheduling ----
    max_workers: int = 8
    parallel_dispatch_delay_ms: int = 50

    # ---- output capture ----
    max_output_lines: int = 50

    # ---- request defaults ----
    default_timeout_seconds: int = 2
    default_memory_mb: int = 128

    # ---- result store ----
    database_url: str = "sqlite:///./compilebox.db"

    # ---- http intake ----
    host: str = "127.0.0.1"
    port: int = 8080

    # env prefix CBX_*
    model_config = SettingsConfigDict(env_prefix="CBX_", extra="ignore")


def _read_yaml(path: str) -> Dict[str, Any]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError:
        data = {}
    return data if isinstance(data, dict) else {}


def load_settings(path: Optional[str] = None) -> Settings:
    # 0) base from env CBX_*
    s = Settings()

    # 1) conf/compilebox.yaml (or COMPILEBOX_CONF)
    data = _read_yaml(path or os.environ.get("COMPILEBOX_CONF", "conf/compilebox.yaml"))

    docker = data.get("docker") or {}
    if not isinstance(docker, dict):
        docker = {}
    scheduling = data.get("scheduling") or {}
    if not isinstance(scheduling, dict):
        scheduling = {}
    defaults = data.get("defaults") or {}
    if not isinstance(defaults, dict):
        defaults = {}
    http = data.get("http") or {}
    if not isinstance(http, dict):
        http = {}

    # 2) merge into Settings, keeping the declared types
    return s.model_copy(
        update={
            "workspace_root": Path(str(data.get("workspace_root", s.workspace_root))),
            "driver_script": Path(str(data.get("driver_script", s.driver_script))),
            "docker_base_url": docker.get("base_url", s.docker_base_url),
            "stop_grace_seconds": int(docker.get("stop_grace_seconds", s.stop_grace_seconds)),
            "max_workers": int(scheduling.get("max_workers", s.max_workers)),
            "parallel_dispatch_delay_ms": int(
                scheduling.get("parallel_dispatch_delay_ms", s.parallel_dispatch_delay_ms)
            ),
            "max_output_lines": int(data.get("max_output_lines", s.max_output_lines)),
            "default_timeout_seconds": int(defaults.get("timeout_seconds", s.default_timeout_seconds)),
            "default_memory_mb": int(defaults.get("memory_mb", s.default_memory_mb)),
            "database_url": str(data.get("database_url", s.database_url)),
            "host": str(http.get("host", s.host)),
            "port": int(http.get("port", s.port)),
        }
    )
