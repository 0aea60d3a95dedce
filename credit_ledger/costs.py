from typing import Any, Dict, Optional

from .errors import UndefinedActionError


class CostCatalog:
    """Per-action costs with optional per-tier overrides of the default."""

    def __init__(self, costs: Dict[str, Dict[str, Any]]):
        self.costs = costs

    def has_action(self, action: str) -> bool:
        return action in self.costs

    def get_cost(self, action: str, membership_tier: Optional[str]) -> int:
        """Resolve the cost of ``action`` for a user on ``membership_tier``.

        Raises:
            UndefinedActionError: If the action has no cost entry
        """
        action_costs = self.costs.get(action)
        if action_costs is None:
            raise UndefinedActionError(action)

        if membership_tier and membership_tier in action_costs:
            return int(action_costs[membership_tier])
        return int(action_costs["default"])
