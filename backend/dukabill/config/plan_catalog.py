"""
Plan catalog loader.

Loads config/billing_plans.yml and exposes:
- plan lookup by id (tier, duration, price)
- amount-range resolution {amount_range -> plan_id}
- reference-code prefix, trial length, grace period, reminder thresholds

Thread-safe singleton; falls back to built-in defaults when the YAML file is
missing so the engine can still start.
"""

import logging
import os
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional

import yaml

from dukabill.billing.errors import UnknownPlanError

logger = logging.getLogger(__name__)

DEFAULT_CATALOG: Dict[str, Any] = {
    "currency": "KES",
    "reference_prefix": "DUKA",
    "trial_days": 7,
    "grace_days": 3,
    "plans": [
        {"id": "basic-monthly", "name": "Basic Monthly", "tier": "BASIC",
         "duration_days": 30, "price": 500, "amount_min": 500, "amount_max": 1499},
        {"id": "premium-monthly", "name": "Premium Monthly", "tier": "PREMIUM",
         "duration_days": 30, "price": 1500, "amount_min": 1500, "amount_max": 4999},
        {"id": "basic-yearly", "name": "Basic Yearly", "tier": "BASIC",
         "duration_days": 365, "price": 5000, "amount_min": 5000, "amount_max": 14999},
        {"id": "premium-yearly", "name": "Premium Yearly", "tier": "PREMIUM",
         "duration_days": 365, "price": 15000, "amount_min": 15000, "amount_max": None},
    ],
    "reminders": {
        "trial_ending_days": [3],
        "payment_due_days": [7, 3],
    },
}


@dataclass(frozen=True)
class Plan:
    """A purchasable plan."""
    id: str
    name: str
    tier: str
    duration_days: int
    price: Decimal
    amount_min: Decimal
    amount_max: Optional[Decimal]

    @property
    def amount_ceiling(self) -> Optional[Decimal]:
        """Exclusive upper bound; amount_max covers its whole final shilling."""
        if self.amount_max is None:
            return None
        return self.amount_max.to_integral_value(rounding=ROUND_FLOOR) + 1

    def accepts(self, amount: Decimal) -> bool:
        if amount < self.amount_min:
            return False
        return self.amount_ceiling is None or amount < self.amount_ceiling


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(str(value))


class PlanCatalog:
    """Singleton holding the plan table and billing settings."""

    _instance: Optional["PlanCatalog"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv("BILLING_PLANS_PATH")
        self._raw: Dict[str, Any] = {}
        self._plans: Dict[str, Plan] = {}
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            Path(__file__).parent.parent.parent.parent / "config" / "billing_plans.yml",
            Path(os.getcwd()) / "config" / "billing_plans.yml",
            Path(os.getcwd()) / ".." / "config" / "billing_plans.yml",
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"billing_plans.yml not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            try:
                path = self._resolve_path()
                logger.info("Loading billing plans from %s", path)
                with open(path, "r") as f:
                    self._raw = yaml.safe_load(f) or {}
            except FileNotFoundError:
                logger.warning("billing_plans.yml not found, using built-in plans")
                self._raw = dict(DEFAULT_CATALOG)

            plans = {}
            for entry in self._raw.get("plans") or DEFAULT_CATALOG["plans"]:
                plan = Plan(
                    id=entry["id"],
                    name=entry.get("name", entry["id"]),
                    tier=str(entry["tier"]).upper(),
                    duration_days=int(entry["duration_days"]),
                    price=_to_decimal(entry["price"]),
                    amount_min=_to_decimal(entry.get("amount_min", entry["price"])),
                    amount_max=_to_decimal(entry.get("amount_max")),
                )
                plans[plan.id] = plan
            self._plans = plans
            self._check_ranges()

            logger.info("Loaded billing plans: %s", sorted(self._plans))

    def _check_ranges(self) -> None:
        ordered = sorted(self._plans.values(), key=lambda p: p.amount_min)
        for lower, upper in zip(ordered, ordered[1:]):
            ceiling = lower.amount_ceiling
            if ceiling is None or ceiling > upper.amount_min:
                logger.warning(
                    "Plan amount ranges overlap: %s and %s", lower.id, upper.id
                )
            elif ceiling < upper.amount_min:
                logger.warning(
                    "Gap in plan amount ranges between %s and %s", lower.id, upper.id
                )

    def reload(self) -> None:
        """Re-read the YAML from disk."""
        self._load()

    @property
    def currency(self) -> str:
        return self._raw.get("currency", DEFAULT_CATALOG["currency"])

    @property
    def reference_prefix(self) -> str:
        return str(self._raw.get("reference_prefix", DEFAULT_CATALOG["reference_prefix"])).upper()

    @property
    def trial_days(self) -> int:
        return int(os.getenv("TRIAL_DURATION_DAYS", self._raw.get("trial_days", 7)))

    @property
    def grace_days(self) -> int:
        return int(self._raw.get("grace_days", DEFAULT_CATALOG["grace_days"]))

    @property
    def trial_ending_days(self) -> List[int]:
        reminders = self._raw.get("reminders") or DEFAULT_CATALOG["reminders"]
        return [int(d) for d in reminders.get("trial_ending_days", [3])]

    @property
    def payment_due_days(self) -> List[int]:
        reminders = self._raw.get("reminders") or DEFAULT_CATALOG["reminders"]
        return [int(d) for d in reminders.get("payment_due_days", [7, 3])]

    def list_plans(self) -> List[Plan]:
        return sorted(self._plans.values(), key=lambda p: p.price)

    def find_plan(self, plan_id: Optional[str]) -> Optional[Plan]:
        if not plan_id:
            return None
        return self._plans.get(plan_id)

    def get_plan(self, plan_id: str) -> Plan:
        """
        Look up a plan by id.

        Raises:
            UnknownPlanError: If no plan has this id
        """
        plan = self.find_plan(plan_id)
        if plan is None:
            raise UnknownPlanError(plan_id)
        return plan

    def plan_for_amount(self, amount: Optional[Decimal]) -> Optional[Plan]:
        """Resolve the plan whose amount range contains amount, if any."""
        if amount is None:
            return None
        for plan in self.list_plans():
            if plan.accepts(amount):
                return plan
        return None

    def tier_for_plan(self, plan_id: Optional[str]) -> str:
        """Tier for a plan id; unknown plans are treated as BASIC."""
        plan = self.find_plan(plan_id)
        return plan.tier if plan else "BASIC"


def get_plan_catalog(config_path: Optional[str] = None) -> PlanCatalog:
    """Return the singleton PlanCatalog."""
    return PlanCatalog(config_path)


def reset_plan_catalog() -> None:
    """Reset singleton (for tests only)."""
    PlanCatalog._instance = None
