"""Command line entry point for local statement ingestion, review and rule inspection."""

import argparse
import logging
import mimetypes
import sys
import traceback
from pathlib import Path

from config import load_config
from core.categories import get_category_by_slug, get_or_create_category
from core.db import init_db
from core.documents import confirm_import, create_document
from core.ingest import build_pipeline, process_document
from core.queries import TransactionFilter, list_documents, list_transactions
from core.rules import list_rules
from core.transactions import update_transaction_category
from paths import ensure_data_dirs

DEFAULT_TENANT = "default"


def _print_document(document: dict) -> None:
    print(
        f"status={document.get('status')} doc_id={document.get('id')} "
        f"extracted={document.get('extractedCount', 0)} "
        f"transactions={document.get('transactionCount', 0)} "
        f"file={document.get('fileName')}"
    )
    if document.get("errorMessage"):
        print(f"message={document['errorMessage']}")


def _guess_mime(path: Path) -> str:
    mime_type, _ = mimetypes.guess_type(str(path))
    return mime_type or ""


def cmd_process(args: argparse.Namespace) -> int:
    config = load_config(require_api_key=args.require_ai)
    path = Path(args.file)
    if not path.exists():
        print(f"File not found: {path}", file=sys.stderr)
        return 1
    document = create_document(
        args.tenant,
        path.name,
        args.mime or _guess_mime(path),
        path.read_bytes(),
        config["upload_dir"],
    )
    result = process_document(args.tenant, args.account, document["id"], build_pipeline(config))
    _print_document(result)
    if result.get("status") == "PENDING_REVIEW":
        for index, row in enumerate(result.get("extractedJson") or []):
            marker = "DUP" if row.get("isDuplicate") else "   "
            print(f"  [{index}] {marker} {row.get('date')} {row.get('amount')!s:>10} {row.get('description')}")
    return 1 if result.get("status") == "FAILED" else 0


def cmd_confirm(args: argparse.Namespace) -> int:
    indices = [int(i) for i in args.indices.split(",") if i.strip()] if args.indices else None
    result = confirm_import(args.tenant, args.doc_id, args.account, args.action, indices)
    _print_document(result)
    return 0


def cmd_documents(args: argparse.Namespace) -> int:
    for document in list_documents(args.tenant):
        _print_document(document)
    return 0


def cmd_transactions(args: argparse.Namespace) -> int:
    page = list_transactions(
        args.tenant,
        TransactionFilter(account_id=args.account, search=args.search, limit=args.limit),
    )
    for tx in page["items"]:
        print(
            f"{tx['id']:>6} {tx.get('displayDate') or tx['date']} "
            f"{tx['displayAmount']:>12.2f} {tx.get('categorySlug') or '-':<16} {tx['description']}"
        )
    print(f"total={page['total']} page={page['page']} limit={page['limit']}")
    return 0


def cmd_rules(args: argparse.Namespace) -> int:
    for rule in list_rules(args.tenant):
        active = "on " if rule["is_active"] else "off"
        print(
            f"{rule['id']:>5} {active} priority={rule['priority']:<4} "
            f"{rule['pattern_type']:<10} {rule['pattern']!r} -> {rule['category_slug']}"
        )
    return 0


def cmd_categorize(args: argparse.Namespace) -> int:
    if args.create:
        category_id = get_or_create_category(args.tenant, args.slug)
    else:
        category = get_category_by_slug(args.tenant, args.slug)
        category_id = category["id"] if category else None
    if category_id is None:
        print(f"Unknown category slug: {args.slug} (use --create)", file=sys.stderr)
        return 1
    tx = update_transaction_category(args.tenant, args.tx_id, category_id)
    print(f"status=updated id={tx['id']} category={tx.get('categorySlug')}")
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("core.api:app", host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Statement ingestion pipeline")
    parser.add_argument("--tenant", default=DEFAULT_TENANT, help="Tenant scope for every command.")
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging and print full tracebacks.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create or migrate the ledger database.")
    p.set_defaults(func=lambda args: 0)

    p = sub.add_parser("process", help="Upload a statement file and process it now.")
    p.add_argument("file", help="Path to an image, PDF, CSV, Excel or Word file.")
    p.add_argument("--account", required=True, help="Account the transactions belong to.")
    p.add_argument("--mime", help="Override the guessed mime type.")
    p.add_argument("--require-ai", action="store_true", help="Fail if OPENAI_API_KEY is not set.")
    p.set_defaults(func=cmd_process)

    p = sub.add_parser("confirm", help="Resolve a document held for duplicate review.")
    p.add_argument("doc_id")
    p.add_argument("--account", required=True)
    p.add_argument("--action", choices=("add_all", "skip_duplicates", "add_none"), default="add_all")
    p.add_argument("--indices", help="Comma separated candidate indices to import.")
    p.set_defaults(func=cmd_confirm)

    p = sub.add_parser("documents", help="List documents.")
    p.set_defaults(func=cmd_documents)

    p = sub.add_parser("transactions", help="List transactions.")
    p.add_argument("--account")
    p.add_argument("--search")
    p.add_argument("--limit", type=int, default=20)
    p.set_defaults(func=cmd_transactions)

    p = sub.add_parser("rules", help="List category rules in matching order.")
    p.set_defaults(func=cmd_rules)

    p = sub.add_parser("categorize", help="Set a transaction's category and learn a rule.")
    p.add_argument("tx_id", type=int)
    p.add_argument("slug")
    p.add_argument("--create", action="store_true", help="Create the category if missing.")
    p.set_defaults(func=cmd_categorize)

    p = sub.add_parser("serve", help="Run the HTTP API.")
    p.add_argument("--host", default="127.0.0.1")
    p.add_argument("--port", type=int, default=8000)
    p.set_defaults(func=cmd_serve)
    return parser


def main(argv: list[str] | None = None) -> int:
    """Entry point with CLI argument parsing."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)
    ensure_data_dirs()
    init_db()
    try:
        return args.func(args)
    except (LookupError, RuntimeError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        if args.verbose:
            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
