"""
teammove/features/plans/catalog.py

Plan catalog.

Handles:
- Built-in plan tiers (free, event packs, pro subscriptions)
- Optional JSON catalog file (PLAN_CATALOG_PATH)
- Stripe price references from STRIPE_PRICE_<PLAN_ID> env vars

The catalog is loaded once per process and is read-only afterwards.
"""

import json
import logging
import os
from functools import lru_cache
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional

from teammove.core.config import settings
from teammove.core.errors import InvalidPlanError
from teammove.models.plan import Plan


logger = logging.getLogger(__name__)

FREE_PLAN_ID = "free"

DEFAULT_PLANS: List[Dict[str, Any]] = [
    {
        "plan_id": FREE_PLAN_ID,
        "display_name": "Découverte",
        "description": "Parfait pour découvrir TeamMove",
        "price_minor_units": 0,
        "currency": "eur",
        "billing_interval": "none",
        "max_events_per_period": 1,
        "max_invitations_per_period": 20,
        "features": [
            "1 événement maximum",
            "Jusqu'à 20 invitations",
            "Gestion du covoiturage",
            "Support par email",
        ],
    },
    {
        "plan_id": "event_single",
        "display_name": "Pack Événement",
        "description": "Idéal pour organiser un événement ponctuel",
        "price_minor_units": 1500,
        "currency": "eur",
        "billing_interval": "one_time",
        "max_events_per_period": 1,
        "max_invitations_per_period": None,
        "validity_days": 365,
        "features": [
            "1 événement complet",
            "Gestion conducteurs/passagers",
            "Messagerie intégrée",
            "Support prioritaire",
        ],
    },
    {
        "plan_id": "event_pack10",
        "display_name": "Pack 10 Événements",
        "description": "Parfait pour les organisateurs réguliers",
        "price_minor_units": 15000,
        "currency": "eur",
        "billing_interval": "one_time",
        "max_events_per_period": 10,
        "max_invitations_per_period": None,
        "validity_days": 365,
        "recommended": True,
        "features": [
            "10 événements complets",
            "Gestion conducteurs/passagers",
            "Messagerie intégrée",
            "Support prioritaire",
            "Valable 12 mois",
        ],
    },
    {
        "plan_id": "pro_club",
        "display_name": "Clubs & Associations",
        "description": "Conçu pour les clubs sportifs et associations",
        "price_minor_units": 1999,
        "currency": "eur",
        "billing_interval": "monthly",
        "max_events_per_period": None,
        "max_invitations_per_period": None,
        "features": [
            "Événements illimités",
            "Invitations illimitées",
            "Statistiques détaillées",
            "Support prioritaire",
        ],
    },
    {
        "plan_id": "pro_pme",
        "display_name": "PME",
        "description": "Idéal pour les petites et moyennes entreprises",
        "price_minor_units": 4900,
        "currency": "eur",
        "billing_interval": "monthly",
        "max_events_per_period": None,
        "max_invitations_per_period": None,
        "features": [
            "Tout de Clubs & Associations",
            "Multi-utilisateurs (5 admins)",
            "Reporting avancé",
            "Support téléphonique",
        ],
    },
    {
        "plan_id": "pro_enterprise",
        "display_name": "Grandes Entreprises",
        "description": "Solution entreprise complète et sur-mesure",
        "price_minor_units": 9900,
        "currency": "eur",
        "billing_interval": "monthly",
        "max_events_per_period": None,
        "max_invitations_per_period": None,
        "features": [
            "Tout de PME",
            "Multi-utilisateurs illimités",
            "Support 24/7",
            "Account Manager dédié",
        ],
    },
]


class PlanCatalog:
    """Immutable, process-wide set of plans keyed by plan_id."""

    def __init__(self, plans: Iterable[Plan]):
        by_id: Dict[str, Plan] = {}
        for plan in plans:
            if plan.plan_id in by_id:
                raise ValueError(f"Duplicate plan_id in catalog: {plan.plan_id}")
            by_id[plan.plan_id] = plan

        free_plans = [p for p in by_id.values() if p.is_free]
        if len(free_plans) != 1:
            raise ValueError(
                f"Plan catalog must define exactly one free plan, found {len(free_plans)}"
            )

        self._plans: Mapping[str, Plan] = MappingProxyType(by_id)
        self._free_plan = free_plans[0]

    def __contains__(self, plan_id: object) -> bool:
        return plan_id in self._plans

    def __iter__(self) -> Iterator[Plan]:
        return iter(self._plans.values())

    def __len__(self) -> int:
        return len(self._plans)

    @property
    def free_plan(self) -> Plan:
        return self._free_plan

    def get(self, plan_id: Optional[str]) -> Optional[Plan]:
        if plan_id is None:
            return None
        return self._plans.get(plan_id)

    def require(self, plan_id: Optional[str]) -> Plan:
        """Return the plan or raise InvalidPlanError."""
        plan = self.get(plan_id)
        if plan is None:
            raise InvalidPlanError(plan_id)
        return plan

    def plan_for_price_ref(self, price_ref: Optional[str]) -> Optional[Plan]:
        """Map a Stripe price id back to a plan."""
        if not price_ref:
            return None
        for plan in self._plans.values():
            if plan.provider_price_ref == price_ref:
                return plan
        return None


def _price_ref_from_env(plan_id: str) -> Optional[str]:
    return os.getenv(f"STRIPE_PRICE_{plan_id.upper()}") or None


def build_catalog(raw_plans: Iterable[Dict[str, Any]]) -> PlanCatalog:
    """Validate raw plan dicts and attach env-provided Stripe price ids."""
    plans = []
    for raw in raw_plans:
        data = dict(raw)
        env_price = _price_ref_from_env(data["plan_id"])
        if env_price:
            data["provider_price_ref"] = env_price
        plans.append(Plan.model_validate(data))
    return PlanCatalog(plans)


def load_plan_catalog(path: Optional[str] = None) -> PlanCatalog:
    """
    Load the plan catalog.

    Args:
        path: JSON file with a list of plans (or {"plans": [...]});
              defaults to the built-in DEFAULT_PLANS.

    Raises:
        ValueError: If the file is malformed or violates catalog rules
    """
    if not path:
        return build_catalog(DEFAULT_PLANS)

    content = json.loads(Path(path).read_text(encoding="utf-8"))
    raw_plans = content.get("plans") if isinstance(content, dict) else content
    if not isinstance(raw_plans, list):
        raise ValueError(f"Plan catalog file {path} must contain a list of plans")

    catalog = build_catalog(raw_plans)
    logger.info("[plans] catalog loaded", extra={"path": path, "plans": len(catalog)})
    return catalog


@lru_cache(maxsize=1)
def get_plan_catalog() -> PlanCatalog:
    """Process-wide catalog, loaded on first use."""
    return load_plan_catalog(settings.PLAN_CATALOG_PATH)


def resolve_catalog(catalog: Optional[PlanCatalog] = None) -> PlanCatalog:
    """Use the injected catalog or fall back to the process-wide one."""
    return catalog if catalog is not None else get_plan_catalog()
