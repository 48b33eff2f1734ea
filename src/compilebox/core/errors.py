from __future__ import annotations


class CompileBoxError(Exception):
    """Base error for the compile sandbox service."""


class UnknownCompilerError(CompileBoxError, ValueError):
    """Raised when a request names a language the registry does not know."""

    def __init__(self, name: str):
        super().__init__(f"compiler_not_found:{name}")
        self.name = name


class MalformedRequestError(CompileBoxError, ValueError):
    """Raised when a queue/http envelope cannot be decoded or validated."""


class SandboxStateError(CompileBoxError, RuntimeError):
    """Raised on lifecycle misuse (response before removal, double run ...)."""


class SandboxPreparationError(CompileBoxError):
    """Raised when the workspace or the container could not be brought up."""
