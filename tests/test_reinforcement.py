from core.categories import ensure_default_categories, get_category_by_slug
from core.reinforcement import LEARNED_RULE_PRIORITY, REINFORCEMENT_STEP, learn_from_correction
from core.rules import list_rules

TENANT = "tenant-a"


def _category_id(slug):
    ensure_default_categories(TENANT)
    return get_category_by_slug(TENANT, slug)["id"]


def test_first_correction_creates_contains_rule():
    groceries = _category_id("groceries")
    rule = learn_from_correction(TENANT, "SuperMart Store #123, Branch 4", groceries)

    assert rule["pattern"] == "SuperMart Store"
    assert rule["pattern_type"] == "contains"
    assert rule["priority"] == LEARNED_RULE_PRIORITY
    assert rule["is_active"] == 1
    assert rule["category_id"] == groceries


def test_repeat_correction_reinforces_the_same_rule():
    groceries = _category_id("groceries")
    learn_from_correction(TENANT, "SuperMart Store #123, Branch 4", groceries)
    rule = learn_from_correction(TENANT, "SuperMart Store #77", groceries)

    assert rule["priority"] == LEARNED_RULE_PRIORITY + REINFORCEMENT_STEP
    assert len(list_rules(TENANT)) == 1


def test_pattern_uniqueness_ignores_case():
    groceries = _category_id("groceries")
    learn_from_correction(TENANT, "SuperMart Store 1", groceries)
    rule = learn_from_correction(TENANT, "SUPERMART STORE 2", groceries)

    assert rule["pattern"] == "SuperMart Store"
    assert rule["priority"] == 15
    assert len(list_rules(TENANT)) == 1


def test_correction_to_another_category_moves_the_rule_and_raises_priority():
    groceries = _category_id("groceries")
    dining = _category_id("dining")
    learn_from_correction(TENANT, "Corner Deli 12", groceries)
    rule = learn_from_correction(TENANT, "Corner Deli 13", dining)

    assert rule["category_id"] == dining
    assert rule["priority"] == 15


def test_priority_never_decreases():
    groceries = _category_id("groceries")
    dining = _category_id("dining")
    seen = []
    for category in (groceries, dining, groceries, dining):
        seen.append(learn_from_correction(TENANT, "Corner Deli", category)["priority"])
    assert seen == sorted(seen)
    assert seen[-1] == LEARNED_RULE_PRIORITY + 3 * REINFORCEMENT_STEP


def test_nothing_to_learn():
    groceries = _category_id("groceries")
    assert learn_from_correction(TENANT, "   ", groceries) is None
    assert learn_from_correction(TENANT, "Corner Deli", None) is None
    assert list_rules(TENANT) == []


def test_learning_is_tenant_scoped():
    groceries = _category_id("groceries")
    ensure_default_categories("tenant-b")
    other = get_category_by_slug("tenant-b", "groceries")["id"]
    learn_from_correction(TENANT, "Corner Deli", groceries)
    rule = learn_from_correction("tenant-b", "Corner Deli", other)

    assert rule["priority"] == LEARNED_RULE_PRIORITY
