from core.duplicates import reconcile_duplicates
from core.transactions import create_transactions

TENANT = "tenant-a"
ACCOUNT = "checking"

ROWS = [
    {"date": "2024-03-01", "description": "קפה נחת", "amount": -12.5},
    {"date": "2024-03-02", "description": "Salary ACME", "amount": 8000.0},
]


def test_fresh_candidates_are_not_duplicates():
    enriched, has_duplicate = reconcile_duplicates(TENANT, ACCOUNT, ROWS)
    assert has_duplicate is False
    assert enriched == ROWS
    assert enriched[0] is not ROWS[0]


def test_existing_rows_are_flagged_with_their_match():
    [first_id, _] = create_transactions(TENANT, ACCOUNT, ROWS)
    enriched, has_duplicate = reconcile_duplicates(TENANT, ACCOUNT, ROWS + [{"date": "2024-03-03", "description": "New", "amount": -1}])

    assert has_duplicate is True
    assert [c.get("isDuplicate", False) for c in enriched] == [True, True, False]
    assert enriched[0]["existingTransaction"] == {
        "id": first_id,
        "date": "2024-03-01",
        "amount": -12.5,
        "description": "קפה נחת",
    }


def test_match_needs_same_account_tenant_and_description():
    create_transactions(TENANT, ACCOUNT, ROWS)
    assert reconcile_duplicates(TENANT, "savings", ROWS)[1] is False
    assert reconcile_duplicates("tenant-b", ACCOUNT, ROWS)[1] is False
    renamed = [{**ROWS[0], "description": "Cafe Nahat"}]
    assert reconcile_duplicates(TENANT, ACCOUNT, renamed)[1] is False


def test_undated_or_unpriced_candidates_pass_through():
    create_transactions(TENANT, ACCOUNT, ROWS)
    odd = [
        {"date": "01/03/2024", "description": "קפה נחת", "amount": -12.5},
        {"date": "2024-03-01", "description": "קפה נחת", "amount": "n/a"},
    ]
    enriched, has_duplicate = reconcile_duplicates(TENANT, ACCOUNT, odd)
    assert has_duplicate is False
    assert enriched == odd


def test_infinite_amount_passes_through_unmarked():
    odd = [{"date": "2024-03-01", "description": "Kiosk", "amount": float("inf")}]
    enriched, has_duplicate = reconcile_duplicates(TENANT, ACCOUNT, odd)
    assert has_duplicate is False
    assert enriched == odd
