from __future__ import annotations
from typing import Dict, Iterable

from .errors import UnknownCompilerError
from .models import ExecutionProfile

# language -> how to run it
COMPILERS: Dict[str, ExecutionProfile] = {
    p.language: p
    for p in (
        ExecutionProfile("python", "python", True, "", "virtual_machine_python", "standard.out", "error.out"),
        ExecutionProfile("javascript", "node", True, "", "virtual_machine_node", "standard.out", "error.out"),
    )
}


def get_compiler(name: str) -> ExecutionProfile:
    try:
        return COMPILERS[(name or "").strip().lower()]
    except KeyError:
        raise UnknownCompilerError(name) from None


def has_compiler(name: str) -> bool:
    return (name or "").strip().lower() in COMPILERS


def supported_languages() -> Iterable[str]:
    return sorted(COMPILERS)
