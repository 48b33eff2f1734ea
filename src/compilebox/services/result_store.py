from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import sessionmaker
from sqlmodel import Field, Session, SQLModel, create_engine

from ..core.models import RequestKind, SandboxResponseResult, SandboxResponseStatus
from ..core.schemas import CompileResponseBase


def _now() -> datetime:
    return datetime.now(timezone.utc)


class CompileRecord(SQLModel, table=True):
    id: str = Field(primary_key=True)
    kind: RequestKind
    compiler_name: str
    result: SandboxResponseResult = SandboxResponseResult.UNKNOWN
    status: SandboxResponseStatus = SandboxResponseStatus.PENDING
    payload: Optional[str] = None      # response JSON once finished
    reason: Optional[str] = None       # set when the request never produced a response
    created_at: datetime = Field(default_factory=_now)
    finished_at: Optional[datetime] = None


class ResultStore:
    def __init__(self, url: str = "sqlite:///./compilebox.db"):
        connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
        self.engine = create_engine(url, connect_args=connect_args)
        SQLModel.metadata.create_all(self.engine)
        # records are handed back across threads, keep them loaded after commit
        self.SessionLocal = sessionmaker(bind=self.engine, class_=Session, expire_on_commit=False)

    def add(self, record: CompileRecord) -> None:
        with self.SessionLocal() as s:
            s.add(record)
            s.commit()

    def get(self, record_id: str) -> Optional[CompileRecord]:
        with self.SessionLocal() as s:
            return s.get(CompileRecord, record_id)

    def update(self, record: CompileRecord) -> CompileRecord:
        with self.SessionLocal() as s:
            db_record = s.merge(record)
            s.commit()
            return db_record

    def finish(self, response: CompileResponseBase) -> Optional[CompileRecord]:
        record = self.get(response.id)
        if record is None:
            return None
        record.result = response.result
        record.status = response.status
        record.payload = response.model_dump_json()
        record.finished_at = _now()
        return self.update(record)

    def fail(self, record_id: str, reason: str) -> Optional[CompileRecord]:
        record = self.get(record_id)
        if record is None:
            return None
        record.result = SandboxResponseResult.FAILED
        record.status = SandboxResponseStatus.UNKNOWN
        record.reason = reason
        record.finished_at = _now()
        return self.update(record)
