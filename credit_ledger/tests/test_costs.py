import pytest

from credit_ledger.costs import CostCatalog
from credit_ledger.errors import UndefinedActionError

COSTS = {
    "generate-image": {"default": 10, "pro": 5, "premium": 0},
    "generate-text": {"default": 1},
}


@pytest.mark.parametrize("tier, expected", [
    (None, 10),
    ("free", 10),
    ("pro", 5),
    ("premium", 0),
])
def test_tier_override_over_default(tier, expected):
    assert CostCatalog(COSTS).get_cost("generate-image", tier) == expected


def test_unknown_action():
    catalog = CostCatalog(COSTS)

    assert catalog.has_action("generate-text") is True
    assert catalog.has_action("teleport") is False
    with pytest.raises(UndefinedActionError) as exc_info:
        catalog.get_cost("teleport", None)

    assert exc_info.value.action == "teleport"
