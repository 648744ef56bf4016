"""Background document processing with an explicit submission and outcome channel."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from core.ingest import Pipeline, process_document

logger = logging.getLogger(__name__)

OUTCOME_OK = "ok"
MAX_OUTCOMES = 1000


class QueueClosedError(RuntimeError):
    """Raised when work is submitted after the queue was shut down."""


class ProcessingQueue:
    """
    One worker thread processes documents in submission order.

    `submit` hands back the Future; a refused submission raises instead of
    being logged and dropped, so the document stays PENDING and the caller
    knows. Finished work records "ok" or the error text in `outcomes`,
    which keeps only the most recent `max_outcomes` documents.
    """

    def __init__(self, pipeline: Pipeline, max_outcomes: int = MAX_OUTCOMES) -> None:
        self.pipeline = pipeline
        self.max_outcomes = max_outcomes
        self.outcomes: OrderedDict[str, str] = OrderedDict()
        self._lock = threading.Lock()
        self._closed = False
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="documents")

    def submit(self, tenant_id: str, account_id: str, doc_id: str) -> Future:
        with self._lock:
            if self._closed:
                raise QueueClosedError("Processing queue is shut down.")
            try:
                future = self._executor.submit(
                    process_document, tenant_id, account_id, doc_id, self.pipeline
                )
            except RuntimeError as exc:
                raise QueueClosedError(str(exc)) from exc
        future.add_done_callback(lambda f: self._record(doc_id, f))
        return future

    def _record(self, doc_id: str, future: Future) -> None:
        exc = future.exception()
        if exc is None:
            outcome = OUTCOME_OK
        else:
            logger.error("Background processing of %s failed: %s", doc_id, exc)
            outcome = str(exc) or type(exc).__name__
        with self._lock:
            self.outcomes[doc_id] = outcome
            self.outcomes.move_to_end(doc_id)
            while len(self.outcomes) > self.max_outcomes:
                self.outcomes.popitem(last=False)

    def shutdown(self, wait: bool = True) -> None:
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "ProcessingQueue":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.shutdown()
