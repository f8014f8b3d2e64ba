"""Plan catalog lookups backed by ``settings.PLAN_CATALOG``."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional

from config import settings
from services.balance import GrantRequest


@dataclass(frozen=True)
class Plan:
    id: str
    name: str
    amount: int
    validity_days: int
    price: int

    def grant(self) -> GrantRequest:
        return GrantRequest(amount=self.amount, validity_days=self.validity_days)


def list_plans() -> Dict[str, Plan]:
    plans: Dict[str, Plan] = {}
    for plan_id, raw in (settings.PLAN_CATALOG or {}).items():
        plans[plan_id] = Plan(
            id=plan_id,
            name=str(raw.get("name") or plan_id),
            amount=int(raw["amount"]),
            validity_days=int(raw.get("validity_days") or 0),
            price=int(raw["price"]),
        )
    return plans


def get_plan(plan_id: Optional[str]) -> Optional[Plan]:
    if not plan_id:
        return None
    return list_plans().get(str(plan_id).strip())
