"""Thin FastAPI JSON surface over the pipeline. No auth; the tenant comes from a header."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import load_config
from core import queries
from core.categories import list_categories
from core.documents import (
    DocumentStateError,
    IllegalTransitionError,
    confirm_import,
    create_document,
    get_document,
)
from core.ingest import build_pipeline
from core.rules import RuleConflictError, create_rule, delete_rule, list_rules, suggest_category
from core.tasks import ProcessingQueue, QueueClosedError
from core.transactions import (
    bulk_flip_sign,
    bulk_update_category,
    get_transaction,
    update_transaction,
    update_transaction_category,
)

_queue: ProcessingQueue | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    if _queue is not None:
        _queue.shutdown(wait=False)


app = FastAPI(title="Statement Ingestion", lifespan=lifespan)


def get_queue() -> ProcessingQueue:
    global _queue
    if _queue is None:
        _queue = ProcessingQueue(build_pipeline())
    return _queue


def get_upload_dir() -> str:
    return load_config()["upload_dir"]


def tenant_id(x_tenant_id: str = Header(...)) -> str:
    tenant = x_tenant_id.strip()
    if not tenant:
        raise HTTPException(status_code=400, detail="X-Tenant-Id header is required")
    return tenant


def _error(status_code: int):
    async def handler(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    return handler


app.add_exception_handler(ValueError, _error(400))
app.add_exception_handler(LookupError, _error(404))
app.add_exception_handler(RuleConflictError, _error(409))
app.add_exception_handler(IllegalTransitionError, _error(409))
app.add_exception_handler(DocumentStateError, _error(409))
app.add_exception_handler(QueueClosedError, _error(503))


class ConfirmImportRequest(BaseModel):
    accountId: str
    action: str
    selectedIndices: list[int] | None = None


class CategoryUpdate(BaseModel):
    categoryId: int | None = None


class BulkCategoryUpdate(BaseModel):
    ids: list[int]
    categoryId: int | None = None


class BulkIds(BaseModel):
    ids: list[int]


class TransactionUpdate(BaseModel):
    description: str | None = None
    categoryId: int | None = None
    date: str | None = None
    amount: float | None = None


class RuleCreate(BaseModel):
    categoryId: int
    pattern: str
    patternType: str = "contains"
    priority: int = 0


@app.post("/documents/upload")
def upload_document(
    file: UploadFile = File(...),
    accountId: str = Form(...),
    tenant: str = Depends(tenant_id),
    queue: ProcessingQueue = Depends(get_queue),
    upload_dir: str = Depends(get_upload_dir),
) -> dict[str, Any]:
    try:
        contents = file.file.read()
    except OSError as e:
        raise HTTPException(status_code=400, detail=f"Failed to read file: {e}") from e
    document = create_document(
        tenant,
        file.filename or "",
        file.content_type or "",
        contents,
        upload_dir,
    )
    queue.submit(tenant, accountId, document["id"])
    return document


@app.get("/documents")
def documents(tenant: str = Depends(tenant_id)) -> list[dict[str, Any]]:
    return queries.list_documents(tenant)


@app.get("/documents/{doc_id}")
def document_detail(doc_id: str, tenant: str = Depends(tenant_id)) -> dict[str, Any]:
    document = get_document(tenant, doc_id)
    if not document:
        raise HTTPException(status_code=404, detail="Document not found")
    return document


@app.post("/documents/{doc_id}/confirm-import")
def confirm_document_import(
    doc_id: str,
    body: ConfirmImportRequest,
    tenant: str = Depends(tenant_id),
) -> dict[str, Any]:
    return confirm_import(tenant, doc_id, body.accountId, body.action, body.selectedIndices)


@app.get("/transactions")
def transactions(
    tenant: str = Depends(tenant_id),
    accountId: str | None = None,
    categoryId: int | None = None,
    type: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    documentId: str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = queries.DEFAULT_PAGE_SIZE,
) -> dict[str, Any]:
    # Empty query params mean "no filter".
    f = queries.TransactionFilter(
        account_id=accountId or None,
        category_id=categoryId,
        type=type or None,
        date_from=date_from or None,
        date_to=date_to or None,
        document_id=documentId or None,
        search=search or None,
        page=page,
        limit=limit,
    )
    return queries.list_transactions(tenant, f)


@app.get("/transactions/{tx_id}")
def transaction_detail(tx_id: int, tenant: str = Depends(tenant_id)) -> dict[str, Any]:
    tx = get_transaction(tenant, tx_id)
    if not tx:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return tx


@app.patch("/transactions/{tx_id}")
def edit_transaction(
    tx_id: int,
    body: TransactionUpdate,
    tenant: str = Depends(tenant_id),
) -> dict[str, Any]:
    return update_transaction(
        tenant,
        tx_id,
        description=body.description,
        category_id=body.categoryId,
        date=body.date,
        amount=body.amount,
    )


@app.patch("/transactions/{tx_id}/category")
def edit_transaction_category(
    tx_id: int,
    body: CategoryUpdate,
    tenant: str = Depends(tenant_id),
) -> dict[str, Any]:
    return update_transaction_category(tenant, tx_id, body.categoryId)


@app.post("/transactions/bulk-category")
def edit_many_categories(body: BulkCategoryUpdate, tenant: str = Depends(tenant_id)) -> dict[str, int]:
    return {"count": bulk_update_category(tenant, body.ids, body.categoryId)}


@app.post("/transactions/bulk-flip-sign")
def flip_many_signs(body: BulkIds, tenant: str = Depends(tenant_id)) -> dict[str, int]:
    return {"count": bulk_flip_sign(tenant, body.ids)}


@app.get("/categories")
def categories(tenant: str = Depends(tenant_id)) -> list[dict[str, Any]]:
    return list_categories(tenant)


@app.get("/rules")
def rules(tenant: str = Depends(tenant_id)) -> list[dict[str, Any]]:
    return list_rules(tenant)


@app.post("/rules")
def add_rule(body: RuleCreate, tenant: str = Depends(tenant_id)) -> dict[str, Any]:
    return create_rule(tenant, body.categoryId, body.pattern, body.patternType, body.priority)


@app.delete("/rules/{rule_id}")
def remove_rule(rule_id: int, tenant: str = Depends(tenant_id)) -> dict[str, bool]:
    if not delete_rule(tenant, rule_id):
        raise HTTPException(status_code=404, detail="Rule not found")
    return {"deleted": True}


@app.get("/rules/suggest")
def suggest(description: str, tenant: str = Depends(tenant_id)) -> dict[str, int | None]:
    return {"categoryId": suggest_category(tenant, description)}
