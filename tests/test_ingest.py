import os

import pytest

from core import db, ingest
from core.documents import (
    COMPLETED,
    FAILED,
    PENDING_REVIEW,
    DocumentNotFoundError,
    IllegalTransitionError,
    confirm_import,
    create_document,
    get_document,
)
from core.ingest import (
    MAX_OCR_TEXT_CHARS,
    NO_TRANSACTIONS_MESSAGE,
    PDF_FAILED_MESSAGE,
    PDF_VISION_PLACEHOLDER,
    VISION_PLACEHOLDER,
    build_user_context,
    process_document,
)
from core.rules import create_rule
from core.categories import ensure_default_categories, get_category_by_slug
from core.transactions import create_transactions
from llm_parser import OpenAIExtractor

TENANT = "tenant-a"
ACCOUNT = "checking"
CSV = "date,description,amount\n2024-03-01,Coffee Shop,-12.50\n2024-03-02,Salary ACME,8000\n"
CSV_ROWS = [
    {"date": "2024-03-01", "description": "Coffee Shop", "amount": -12.5, "categorySlug": "dining"},
    {"date": "2024-03-02", "description": "Salary ACME", "amount": 8000.0, "categorySlug": "salary"},
]


def _upload(upload_dir, name, mime, content=b"statement bytes"):
    return create_document(TENANT, name, mime, content, upload_dir)["id"]


def _transaction_count():
    return len(db.fetchall("SELECT id FROM transactions"))


def test_photo_of_card_statement_becomes_an_expense(upload_dir, keywords, fake_ocr, make_pipeline):
    doc_id = _upload(upload_dir, "photo.jpg", "image/jpeg")
    ocr = fake_ocr("15/03/2024 ISRACARD 651.00")
    pipeline = make_pipeline(extractor=OpenAIExtractor("", keywords), ocr=ocr)

    doc = process_document(TENANT, ACCOUNT, doc_id, pipeline)

    assert doc["status"] == COMPLETED
    assert doc["ocrText"] == "15/03/2024 ISRACARD 651.00"
    [tx] = doc["transactions"]
    assert (tx["date"], tx["description"], tx["amount"]) == ("2024-03-15", "ISRACARD", -651.0)
    assert tx["source"] == "UPLOAD"
    assert tx["documentId"] == doc_id


def test_same_csv_twice_is_held_for_review_then_skipped(upload_dir, fake_extractor, make_pipeline):
    extractor = fake_extractor(text_rows=CSV_ROWS)
    pipeline = make_pipeline(extractor=extractor)

    first = process_document(TENANT, ACCOUNT, _upload(upload_dir, "march.csv", "text/csv", CSV.encode()), pipeline)
    assert first["status"] == COMPLETED
    assert first["transactionCount"] == 2
    assert "Coffee Shop" in extractor.text_calls[0][0]

    second_id = _upload(upload_dir, "march.csv", "text/csv", CSV.encode())
    second = process_document(TENANT, ACCOUNT, second_id, pipeline)

    assert second["status"] == PENDING_REVIEW
    assert second["transactionCount"] == 0
    assert [c["isDuplicate"] for c in second["extractedJson"]] == [True, True]
    assert second["extractedJson"][0]["existingTransaction"]["id"] == first["transactions"][0]["id"]
    assert _transaction_count() == 2

    done = confirm_import(TENANT, second_id, ACCOUNT, "skip_duplicates")
    assert done["status"] == COMPLETED
    assert done["transactionCount"] == 0
    assert _transaction_count() == 2


def test_one_duplicate_holds_the_whole_batch(upload_dir, fake_extractor, make_pipeline):
    create_transactions(TENANT, ACCOUNT, CSV_ROWS[:1])
    pipeline = make_pipeline(extractor=fake_extractor(text_rows=CSV_ROWS), get_text=lambda path, mime: CSV)

    doc = process_document(TENANT, ACCOUNT, _upload(upload_dir, "march.csv", "text/csv"), pipeline)

    assert doc["status"] == PENDING_REVIEW
    assert [c.get("isDuplicate", False) for c in doc["extractedJson"]] == [True, False]
    assert _transaction_count() == 1


def test_vision_rows_skip_ocr(upload_dir, fake_extractor, fake_ocr, make_pipeline):
    ocr = fake_ocr("should not be used")
    extractor = fake_extractor(vision_rows=CSV_ROWS)
    doc_id = _upload(upload_dir, "shot.png", "image/png")

    doc = process_document(TENANT, ACCOUNT, doc_id, make_pipeline(extractor=extractor, ocr=ocr))

    assert doc["status"] == COMPLETED
    assert doc["ocrText"] == VISION_PLACEHOLDER
    assert doc["transactionCount"] == 2
    assert ocr.calls == []


def test_vision_failure_falls_back_to_ocr(upload_dir, fake_extractor, fake_ocr, make_pipeline):
    extractor = fake_extractor(text_rows=CSV_ROWS[:1], vision_error=RuntimeError("provider down"))
    ocr = fake_ocr("01/03/2024 Coffee Shop 12.50")
    doc_id = _upload(upload_dir, "shot.png", "image/png")

    doc = process_document(TENANT, ACCOUNT, doc_id, make_pipeline(extractor=extractor, ocr=ocr))

    assert doc["status"] == COMPLETED
    assert doc["transactionCount"] == 1
    assert len(ocr.calls) == 1
    assert extractor.text_calls[0][0] == "01/03/2024 Coffee Shop 12.50"


def test_nothing_extracted_completes_with_message(upload_dir, fake_extractor, fake_ocr, make_pipeline):
    doc_id = _upload(upload_dir, "blurry.jpg", "image/jpeg")
    extractor = fake_extractor()

    doc = process_document(TENANT, ACCOUNT, doc_id, make_pipeline(extractor=extractor, ocr=fake_ocr("abc")))

    assert doc["status"] == COMPLETED
    assert doc["errorMessage"] == NO_TRANSACTIONS_MESSAGE
    assert doc["transactionCount"] == 0
    assert doc["extractedJson"] == []
    assert extractor.text_calls == []


def test_pdf_pages_go_through_vision_in_order(upload_dir, fake_extractor, make_pipeline):
    rendered_dirs = []

    def render(path, out_dir):
        rendered_dirs.append(out_dir)
        pages = []
        for index in (1, 2):
            page = os.path.join(out_dir, f"page-{index:03d}.png")
            with open(page, "wb") as handle:
                handle.write(b"png")
            pages.append(page)
        return pages

    def rows_for(page):
        number = 1 if page.endswith("001.png") else 2
        return [CSV_ROWS[number - 1]]

    extractor = fake_extractor(vision_rows=rows_for)
    doc_id = _upload(upload_dir, "statement.pdf", "application/pdf")

    doc = process_document(TENANT, ACCOUNT, doc_id, make_pipeline(extractor=extractor, render_pages=render))

    assert doc["status"] == COMPLETED
    assert doc["ocrText"] == PDF_VISION_PLACEHOLDER
    assert [t["description"] for t in doc["transactions"]] == ["Coffee Shop", "Salary ACME"]
    assert [os.path.basename(p) for p, _ in extractor.vision_calls] == ["page-001.png", "page-002.png"]
    assert not os.path.exists(rendered_dirs[0])


def test_pdf_without_images_uses_text(upload_dir, fake_extractor, make_pipeline):
    def render(path, out_dir):
        raise RuntimeError("renderer missing")

    extractor = fake_extractor(text_rows=CSV_ROWS)
    pipeline = make_pipeline(
        extractor=extractor,
        render_pages=render,
        get_text=lambda path, mime: "01/03/2024 Coffee Shop 12.50",
    )

    doc = process_document(TENANT, ACCOUNT, _upload(upload_dir, "statement.pdf", "application/pdf"), pipeline)

    assert doc["status"] == COMPLETED
    assert doc["transactionCount"] == 2
    assert extractor.vision_calls == []


def test_unreadable_pdf_fails(upload_dir, make_pipeline):
    pipeline = make_pipeline(render_pages=lambda path, out_dir: [], get_text=lambda path, mime: "")

    doc = process_document(TENANT, ACCOUNT, _upload(upload_dir, "scan.pdf", "application/pdf"), pipeline)

    assert doc["status"] == FAILED
    assert doc["errorMessage"] == PDF_FAILED_MESSAGE
    assert doc["processedAt"]


def test_missing_stored_file_fails(upload_dir, make_pipeline):
    doc_id = _upload(upload_dir, "march.csv", "text/csv")
    os.remove(get_document(TENANT, doc_id)["storagePath"])

    doc = process_document(TENANT, ACCOUNT, doc_id, make_pipeline())

    assert doc["status"] == FAILED
    assert doc["errorMessage"] == "Document or file not found"


def test_unexpected_error_fails_the_document(upload_dir, fake_extractor, make_pipeline):
    bad_rows = [{"date": "2024-03-01", "description": "Broken", "amount": "n/a"}]
    pipeline = make_pipeline(extractor=fake_extractor(text_rows=bad_rows), get_text=lambda path, mime: CSV)

    doc = process_document(TENANT, ACCOUNT, _upload(upload_dir, "march.csv", "text/csv"), pipeline)

    assert doc["status"] == FAILED
    assert "invalid amount" in doc["errorMessage"]
    assert _transaction_count() == 0


def test_only_pending_documents_are_processed(upload_dir, make_pipeline):
    doc_id = _upload(upload_dir, "march.csv", "text/csv")
    pipeline = make_pipeline(get_text=lambda path, mime: "")
    process_document(TENANT, ACCOUNT, doc_id, pipeline)

    with pytest.raises(IllegalTransitionError):
        process_document(TENANT, ACCOUNT, doc_id, pipeline)
    with pytest.raises(DocumentNotFoundError):
        process_document(TENANT, ACCOUNT, "missing", pipeline)


def test_ocr_text_is_truncated(upload_dir, fake_ocr, make_pipeline):
    long_text = "x" * (MAX_OCR_TEXT_CHARS + 100)
    doc_id = _upload(upload_dir, "shot.png", "image/png")

    doc = process_document(TENANT, ACCOUNT, doc_id, make_pipeline(ocr=fake_ocr(long_text)))

    assert len(doc["ocrText"]) == MAX_OCR_TEXT_CHARS


def test_user_context_lists_rules_and_recent_categorizations(upload_dir, fake_extractor, make_pipeline):
    ensure_default_categories(TENANT)
    dining = get_category_by_slug(TENANT, "dining")["id"]
    create_rule(TENANT, dining, "Corner Deli", priority=5)
    create_transactions(TENANT, ACCOUNT, CSV_ROWS)

    context = build_user_context(TENANT)

    rules_line, recent_line = context.split("\n")
    assert rules_line == 'Rules (learned from user corrections): when description contains "Corner Deli" use category dining'
    assert recent_line.startswith('Recent categorizations (prefer when description matches): "Salary ACME" -> salary')

    extractor = fake_extractor()
    process_document(
        TENANT,
        ACCOUNT,
        _upload(upload_dir, "april.csv", "text/csv"),
        make_pipeline(extractor=extractor, get_text=lambda path, mime: CSV),
    )
    assert extractor.text_calls[0][1] == context


def test_user_context_failure_is_empty(monkeypatch):
    def broken(*args, **kwargs):
        raise RuntimeError("db gone")

    monkeypatch.setattr(ingest, "list_rules", broken)
    assert build_user_context(TENANT) == ""


def test_csv_without_model_runs_through_the_local_classifier(upload_dir, keywords, make_pipeline):
    content = (
        "date,description,amount\n"
        "2024-03-15,ISRACARD,651.00\n"
        "2024-03-16,Coffee Shop,45.90\n"
        "2024-03-20,Laptop,1950.00\n"
        "2024-03-25,salary ACME,12500\n"
    ).encode()
    doc_id = _upload(upload_dir, "march.csv", "text/csv", content)
    pipeline = make_pipeline(extractor=OpenAIExtractor("", keywords))

    doc = process_document(TENANT, ACCOUNT, doc_id, pipeline)

    assert doc["status"] == COMPLETED
    rows = sorted((tx["date"], tx["description"], tx["amount"]) for tx in doc["transactions"])
    assert rows == [
        ("2024-03-15", "ISRACARD", -651.0),
        ("2024-03-16", "Coffee Shop", -45.9),
        ("2024-03-20", "Laptop", -1950.0),
        ("2024-03-25", "salary ACME", 12500.0),
    ]
