from __future__ import annotations
import json
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

import structlog
from fastapi import Body, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from ..core.compilers import has_compiler, supported_languages
from ..core.errors import CompileBoxError, MalformedRequestError
from ..core.schemas import parse_request
from ..logging import setup_logging
from ..services.compiler_service import CompilerService
from ..services.publisher import StorePublisher
from ..services.result_store import CompileRecord, ResultStore
from ..settings import load_settings

log = structlog.get_logger(__name__)


# --------- Schemas ---------

class SubmitRes(BaseModel):
    id: str


class RecordRes(BaseModel):
    id: str
    kind: str
    compiler_name: str
    result: str
    status: str
    reason: Optional[str] = None
    response: Optional[Dict[str, Any]] = None
    created_at: str
    finished_at: Optional[str] = None

    @classmethod
    def from_record(cls, r: CompileRecord) -> "RecordRes":
        return cls(
            id=r.id,
            kind=r.kind.value,
            compiler_name=r.compiler_name,
            result=r.result.value,
            status=r.status.value,
            reason=r.reason,
            response=_loads(r.payload),
            created_at=r.created_at.isoformat(),
            finished_at=r.finished_at.isoformat() if r.finished_at else None,
        )


def _loads(payload: Optional[str]) -> Optional[Dict[str, Any]]:
    return json.loads(payload) if payload else None


# --------- App ---------

def create_app(service: CompilerService, store: ResultStore) -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI):
        service.start()
        try:
            yield
        finally:
            service.stop()

    app = FastAPI(title="CompileBox", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.get("/compilers", response_model=List[str])
    def compilers():
        return list(supported_languages())

    @app.post("/compile", response_model=SubmitRes)
    def submit(payload: Dict[str, Any] = Body(...)):
        try:
            request = parse_request(payload, defaults=service.request_defaults())
        except MalformedRequestError as e:
            raise HTTPException(status_code=400, detail=str(e))
        if not has_compiler(request.compiler_name):
            raise HTTPException(status_code=400, detail=f"compiler_not_found:{request.compiler_name}")
        if store.get(request.id) is not None:
            raise HTTPException(status_code=409, detail=f"duplicate_id:{request.id}")

        store.add(CompileRecord(id=request.id, kind=request.type, compiler_name=request.compiler_name))
        try:
            future = service.handle(request)
        except CompileBoxError as e:
            store.fail(request.id, str(e))
            raise HTTPException(status_code=400, detail=str(e))
        except Exception as e:
            log.exception("submit_failed", request_id=request.id)
            store.fail(request.id, str(e))
            raise HTTPException(status_code=500, detail=str(e))

        def _record_failure(f):
            error = f.exception()
            if error is not None:
                store.fail(request.id, str(error))

        future.add_done_callback(_record_failure)
        return SubmitRes(id=request.id)

    @app.get("/compile/{record_id}", response_model=RecordRes)
    def get_record(record_id: str):
        record = store.get(record_id)
        if record is None:
            raise HTTPException(status_code=404, detail="record_not_found")
        return RecordRes.from_record(record)

    return app


def main() -> None:
    setup_logging()
    import uvicorn

    settings = load_settings()
    store = ResultStore(settings.database_url)
    service = CompilerService(settings, publisher=StorePublisher(store))
    uvicorn.run(create_app(service, store), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
