"""
Plan catalog: provider product/price identifiers -> canonical plans.

Loaded once from config/plans.json (or PLAN_CATALOG_PATH) and cached for
the life of the process. Unknown identifiers are an error, never a silent
default; legacy App Store product ids may fall back to a keyword match,
which is reported as an assumption.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Sequence, Tuple

from learnpass.config.settings import DEFAULT_PLAN_CATALOG_PATH
from learnpass.platform.errors import ValidationError

logger = logging.getLogger(__name__)


class Plan(str, Enum):
    """Canonical plan names."""
    FREE = "free"
    INDIVIDUAL = "individual"  # legacy individual tier
    SIGNATURE = "signature"
    STUDIO = "studio"
    SALON = "salon"


class PlanTier(str, Enum):
    """Tier a plan belongs to."""
    FREE = "free"
    INDIVIDUAL = "individual"
    TEAM = "team"


class UnknownProductError(ValidationError):
    """A provider product or price identifier is not in the catalog."""

    def __init__(self, source: str, identifier: Optional[str]):
        super().__init__(
            f"Unknown {source} product identifier: {identifier}",
            details={"source": source, "identifier": identifier},
        )
        self.source = source
        self.identifier = identifier


@dataclass(frozen=True)
class PlanDefinition:
    """One catalog entry."""

    plan: Plan
    display_name: str
    tier: PlanTier
    amount_cents: int
    interval: str = "month"
    currency: str = "USD"
    stripe_price_ids: FrozenSet[str] = frozenset()
    apple_product_ids: FrozenSet[str] = frozenset()

    def __post_init__(self) -> None:
        if self.amount_cents < 0:
            raise ValueError(f"amount_cents must be >= 0 for plan {self.plan.value}")
        object.__setattr__(self, "stripe_price_ids", frozenset(self.stripe_price_ids))
        object.__setattr__(self, "apple_product_ids", frozenset(self.apple_product_ids))

    @property
    def is_paid(self) -> bool:
        return self.tier != PlanTier.FREE


@dataclass(frozen=True)
class PlanMatch:
    """Result of resolving a provider identifier."""

    plan: Plan
    identifier: str
    assumed: bool = False


class PlanCatalog:
    """Immutable lookup tables over the configured plans."""

    def __init__(
        self,
        plans: Iterable[PlanDefinition],
        legacy_keywords: Sequence[str] = (),
    ):
        definitions: Dict[Plan, PlanDefinition] = {}
        stripe_index: Dict[str, Plan] = {}
        apple_index: Dict[str, Plan] = {}

        for definition in plans:
            if definition.plan in definitions:
                raise ValueError(f"Duplicate plan in catalog: {definition.plan.value}")
            definitions[definition.plan] = definition
            for price_id in definition.stripe_price_ids:
                if price_id in stripe_index:
                    raise ValueError(f"Price id {price_id} mapped to more than one plan")
                stripe_index[price_id] = definition.plan
            for product_id in definition.apple_product_ids:
                if product_id in apple_index:
                    raise ValueError(f"Product id {product_id} mapped to more than one plan")
                apple_index[product_id] = definition.plan

        if Plan.FREE not in definitions:
            raise ValueError("Catalog must define the free plan")

        unknown_keywords = [k for k in legacy_keywords if k not in {p.value for p in definitions}]
        if unknown_keywords:
            raise ValueError(f"Legacy keywords reference unknown plans: {unknown_keywords}")

        self._plans: Mapping[Plan, PlanDefinition] = MappingProxyType(definitions)
        self._stripe_index: Mapping[str, Plan] = MappingProxyType(stripe_index)
        self._apple_index: Mapping[str, Plan] = MappingProxyType(apple_index)
        self._legacy_keywords: Tuple[str, ...] = tuple(legacy_keywords)

    @classmethod
    def from_dict(cls, raw: Mapping) -> "PlanCatalog":
        currency = str(raw.get("currency", "USD")).upper()
        plans = []
        for name, body in (raw.get("plans") or {}).items():
            plans.append(
                PlanDefinition(
                    plan=Plan(str(name).strip()),
                    display_name=str(body.get("display_name", name)),
                    tier=PlanTier(body.get("tier", "individual")),
                    amount_cents=int(body.get("amount_cents", 0)),
                    interval=str(body.get("interval", "month")),
                    currency=currency,
                    stripe_price_ids=frozenset(s.strip() for s in body.get("stripe_price_ids", [])),
                    apple_product_ids=frozenset(s.strip() for s in body.get("apple_product_ids", [])),
                )
            )
        return cls(plans, legacy_keywords=[str(k).strip() for k in raw.get("legacy_product_keywords", [])])

    @classmethod
    def load(cls, path: Optional[str] = None) -> "PlanCatalog":
        config_path = Path(path) if path else DEFAULT_PLAN_CATALOG_PATH
        with open(config_path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        catalog = cls.from_dict(raw)
        logger.info("Loaded plan catalog", extra={
            "path": str(config_path),
            "plans": [p.value for p in catalog.plans()],
        })
        return catalog

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def plans(self) -> Tuple[Plan, ...]:
        return tuple(self._plans)

    def get(self, plan: Plan | str) -> PlanDefinition:
        try:
            return self._plans[Plan(plan)]
        except (KeyError, ValueError):
            raise ValidationError(f"Unknown plan: {plan}", details={"plan": str(plan)})

    def list_price(self, plan: Plan | str) -> int:
        return self.get(plan).amount_cents

    def paid_plans(self) -> FrozenSet[str]:
        return frozenset(p.value for p, d in self._plans.items() if d.is_paid)

    def individual_plans(self) -> FrozenSet[str]:
        return frozenset(p.value for p, d in self._plans.items() if d.tier == PlanTier.INDIVIDUAL)

    def is_paid(self, plan: Optional[str]) -> bool:
        return plan in self.paid_plans()

    def plan_for_stripe_price(self, price_id: Optional[str]) -> PlanMatch:
        """Exact match only; card-billing prices have no legacy fallback."""
        plan = self._stripe_index.get((price_id or "").strip())
        if plan is None:
            raise UnknownProductError("stripe", price_id)
        return PlanMatch(plan=plan, identifier=price_id)

    def plan_for_apple_product(self, product_id: Optional[str]) -> PlanMatch:
        """Exact match first, then legacy keyword match (recorded as assumed)."""
        normalized = (product_id or "").strip()
        plan = self._apple_index.get(normalized)
        if plan is not None:
            return PlanMatch(plan=plan, identifier=normalized)

        lowered = normalized.lower()
        for keyword in self._legacy_keywords:
            if keyword in lowered:
                logger.warning("Legacy App Store product mapped by keyword", extra={
                    "product_id": normalized,
                    "assumed_plan": keyword,
                })
                return PlanMatch(plan=Plan(keyword), identifier=normalized, assumed=True)

        raise UnknownProductError("apple", product_id)


_catalog: Optional[PlanCatalog] = None


def get_plan_catalog(path: Optional[str] = None) -> PlanCatalog:
    """Return the process-wide catalog, loading it on first use."""
    global _catalog
    if _catalog is None:
        _catalog = PlanCatalog.load(path)
    return _catalog


def reset_plan_catalog() -> None:
    global _catalog
    _catalog = None
