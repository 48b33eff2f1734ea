from __future__ import annotations
from typing import Protocol

import structlog

from ..core.schemas import CompileResponseBase
from .result_store import ResultStore

log = structlog.get_logger(__name__)

RESPONSE_TOPIC = "compiled"


class Publisher(Protocol):
    def publish(self, response: CompileResponseBase) -> None: ...


class LogPublisher:
    """Writes every response to the log. Used when no transport is attached."""

    topic = RESPONSE_TOPIC

    def publish(self, response: CompileResponseBase) -> None:
        log.info("response_published", topic=self.topic, request_id=response.id,
                 result=response.result.value, status=response.status.value,
                 payload=response.model_dump(mode="json"))


class StorePublisher:
    topic = RESPONSE_TOPIC

    def __init__(self, store: ResultStore):
        self.store = store

    def publish(self, response: CompileResponseBase) -> None:
        record = self.store.finish(response)
        if record is None:
            log.warning("response_without_record", topic=self.topic, request_id=response.id)
            return
        log.info("response_stored", topic=self.topic, request_id=response.id,
                 result=response.result.value, status=response.status.value)
