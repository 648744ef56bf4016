import pytest

from core.documents import COMPLETED, PENDING, create_document, get_document
from core.tasks import OUTCOME_OK, ProcessingQueue, QueueClosedError

TENANT = "tenant-a"


def _pending(upload_dir):
    return create_document(TENANT, "march.csv", "text/csv", b"a,b\n", upload_dir)["id"]


def test_submitted_documents_are_processed_and_recorded(upload_dir, make_pipeline):
    doc_ids = [_pending(upload_dir), _pending(upload_dir)]
    queue = ProcessingQueue(make_pipeline(get_text=lambda path, mime: ""))

    futures = [queue.submit(TENANT, "checking", doc_id) for doc_id in doc_ids]
    results = [future.result(timeout=10) for future in futures]
    queue.shutdown()

    assert [r["status"] for r in results] == [COMPLETED, COMPLETED]
    assert queue.outcomes == {doc_ids[0]: OUTCOME_OK, doc_ids[1]: OUTCOME_OK}


def test_failures_reach_the_outcome_channel(make_pipeline):
    with ProcessingQueue(make_pipeline()) as queue:
        future = queue.submit(TENANT, "checking", "missing")
    assert future.exception() is not None
    assert "missing" in queue.outcomes["missing"]


def test_closed_queue_refuses_work_and_leaves_document_pending(upload_dir, make_pipeline):
    doc_id = _pending(upload_dir)
    queue = ProcessingQueue(make_pipeline())
    queue.shutdown()

    with pytest.raises(QueueClosedError):
        queue.submit(TENANT, "checking", doc_id)
    assert get_document(TENANT, doc_id)["status"] == PENDING


def test_outcomes_keep_only_the_most_recent_documents(upload_dir, make_pipeline):
    doc_ids = [_pending(upload_dir) for _ in range(3)]
    queue = ProcessingQueue(make_pipeline(get_text=lambda path, mime: ""), max_outcomes=2)

    for doc_id in doc_ids:
        queue.submit(TENANT, "checking", doc_id).result(timeout=10)
    queue.shutdown()

    assert list(queue.outcomes) == doc_ids[1:]
