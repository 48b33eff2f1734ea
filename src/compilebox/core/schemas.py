"""Queue/HTTP envelopes exchanged with the transport layer."""
from __future__ import annotations

import json
from typing import Any, List, Mapping, Optional, Union

from pydantic import BaseModel, Field, ValidationError

from .errors import MalformedRequestError
from .models import RequestKind, SandboxResponseResult, SandboxResponseStatus, TestVerdict
from .utils import new_request_id


class TestCase(BaseModel):
    id: str = Field(default_factory=new_request_id)
    standard_input: List[str] = []
    expected_output: List[str] = []


class TestCaseResult(BaseModel):
    id: str
    result: TestVerdict
    standard_output: List[str] = []
    standard_error_output: List[str] = []


# --------- Requests ---------

class CompileRequestBase(BaseModel):
    id: str = Field(default_factory=new_request_id)
    type: RequestKind
    timeout_seconds: int = Field(default=2, gt=0)
    memory_constraint: int = Field(default=128, gt=0)  # MB
    source_code: List[str]
    compiler_name: str


class CompileSourceRequest(CompileRequestBase):
    type: RequestKind = RequestKind.COMPILE
    standard_input: List[str] = []


class CompileTestSourceRequest(CompileRequestBase):
    type: RequestKind = RequestKind.SINGLE_TEST
    test_case: Optional[TestCase] = None


class CompileMultipleTestsSourceRequest(CompileRequestBase):
    type: RequestKind = RequestKind.MULTIPLE_TESTS
    test_cases: List[TestCase] = []
    run_all: bool = False
    run_all_parallel: bool = False


CompileRequest = Union[CompileSourceRequest, CompileTestSourceRequest, CompileMultipleTestsSourceRequest]

_REQUEST_TYPES = {
    RequestKind.COMPILE: CompileSourceRequest,
    RequestKind.SINGLE_TEST: CompileTestSourceRequest,
    RequestKind.MULTIPLE_TESTS: CompileMultipleTestsSourceRequest,
}


# --------- Responses ---------

class CompileResponseBase(BaseModel):
    id: str
    result: SandboxResponseResult = SandboxResponseResult.UNKNOWN
    status: SandboxResponseStatus = SandboxResponseStatus.UNKNOWN
    standard_output: List[str] = []
    standard_error_output: List[str] = []


class CompileSourceResponse(CompileResponseBase):
    pass


class CompileTestSourceResponse(CompileResponseBase):
    test_case_result: Optional[TestCaseResult] = None


class CompileMultipleTestsSourceResponse(CompileResponseBase):
    test_case_results: List[TestCaseResult] = []


CompileResponse = Union[CompileSourceResponse, CompileTestSourceResponse, CompileMultipleTestsSourceResponse]


def parse_request(raw: Union[bytes, str, Mapping[str, Any]],
                  defaults: Optional[Mapping[str, Any]] = None) -> CompileRequest:
    """
    Decode a queue message into the request model matching its ``type``.
    ``defaults`` fill in fields the message leaves out.
    """
    if isinstance(raw, (bytes, bytearray)):
        raw = raw.decode("utf-8")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise MalformedRequestError(f"invalid_json:{e}") from e
    if not isinstance(raw, Mapping):
        raise MalformedRequestError("request must be a JSON object")
    if defaults:
        raw = {**defaults, **raw}

    try:
        kind = RequestKind(raw.get("type"))
    except ValueError as e:
        raise MalformedRequestError(f"unknown_request_type:{raw.get('type')}") from e

    try:
        return _REQUEST_TYPES[kind].model_validate(raw)
    except ValidationError as e:
        raise MalformedRequestError(str(e)) from e
