"""
Plan table: the injectable, versioned price list.

Prices and referral bonuses have changed between deployments, so they are
never hardcoded at call sites. Every engine operation takes an optional
PlanTable; when omitted, the process-wide table from config is used.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import config
from app.services.subscriptions.exceptions import InvalidPlanError

logger = logging.getLogger(__name__)

TRIAL_TIER = "trial"
GIFT_TIER = "gift"
RESERVED_TIERS = frozenset({TRIAL_TIER, GIFT_TIER})


@dataclass(frozen=True)
class Plan:
    """One purchasable plan"""
    key: str
    price: int
    days: int
    referral_bonus: int = 0


@dataclass(frozen=True)
class PlanTable:
    """Named, versioned set of plans"""
    version: str
    plans: Dict[str, Plan] = field(default_factory=dict)

    def get(self, plan_key: Optional[str]) -> Plan:
        """
        Look up a plan by key.

        Raises:
            InvalidPlanError: If the key is not in this table
        """
        plan = self.plans.get(plan_key) if plan_key else None
        if plan is None:
            raise InvalidPlanError(f"Invalid plan: {plan_key}")
        return plan

    def __contains__(self, plan_key: object) -> bool:
        return plan_key in self.plans

    def keys(self):
        return self.plans.keys()

    @classmethod
    def from_mapping(cls, version: str, raw: Mapping[str, Mapping[str, Any]]) -> "PlanTable":
        """
        Build a table from {"weekly": {"price": 3000, "days": 7, "bonus": 500}, ...}.

        Raises:
            ValueError: On reserved keys, non-positive durations or negative amounts
        """
        plans = {}
        for key, entry in raw.items():
            if key in RESERVED_TIERS:
                raise ValueError(f"Plan key '{key}' is reserved")
            price = int(entry["price"])
            days = int(entry["days"])
            bonus = int(entry.get("bonus", 0))
            if days <= 0:
                raise ValueError(f"Plan '{key}' must last at least one day, got {days}")
            if price < 0 or bonus < 0:
                raise ValueError(f"Plan '{key}' has a negative price or bonus")
            plans[key] = Plan(key=key, price=price, days=days, referral_bonus=bonus)
        return cls(version=version, plans=plans)

    @classmethod
    def from_json_file(cls, path: Path) -> "PlanTable":
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        return cls.from_mapping(str(data.get("version", path.name)), data["plans"])


_plan_table: Optional[PlanTable] = None


def load_plan_table() -> PlanTable:
    """Build the table from PLANS_FILE when set, otherwise from config.PLANS"""
    if config.PLANS_FILE:
        table = PlanTable.from_json_file(Path(config.PLANS_FILE))
        logger.info(f"PLAN_TABLE_LOADED source=file version={table.version} plans={sorted(table.keys())}")
        return table
    table = PlanTable.from_mapping(config.PLAN_TABLE_VERSION, config.PLANS)
    logger.info(f"PLAN_TABLE_LOADED source=config version={table.version} plans={sorted(table.keys())}")
    return table


def get_plan_table() -> PlanTable:
    global _plan_table
    if _plan_table is None:
        _plan_table = load_plan_table()
    return _plan_table


def set_plan_table(table: Optional[PlanTable]) -> None:
    """Replace the process-wide table (None resets to config on next use)"""
    global _plan_table
    _plan_table = table
