"""
Plan Catalog - Product id to plan mapping.

Exhaustive mapping table built from configuration. Matching is
case-insensitive; ids that are not configured map to PlanType.UNKNOWN.
"""

from entitlements.config import Settings, get_settings
from entitlements.models.domain import PlanType, Product

# Display order of the catalog
PLAN_PRIORITY: dict[PlanType, int] = {
    PlanType.MONTHLY: 1,
    PlanType.ANNUAL: 2,
    PlanType.LIFETIME: 3,
    PlanType.UNKNOWN: 4,
}


class PlanCatalog:
    """Maps provider product ids to plan types."""

    def __init__(self, plans: dict[str, PlanType]) -> None:
        self._plans = {product_id.lower(): plan for product_id, plan in plans.items()}

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "PlanCatalog":
        """Build the mapping table from configured product id lists."""
        settings = settings or get_settings()
        plans: dict[str, PlanType] = {}
        for product_id in settings.monthly_ids:
            plans[product_id] = PlanType.MONTHLY
        for product_id in settings.annual_ids:
            plans[product_id] = PlanType.ANNUAL
        # Legacy lifetime ids are never sold but still grant Lifetime
        for product_id in settings.lifetime_ids + settings.legacy_lifetime_ids:
            plans[product_id] = PlanType.LIFETIME
        return cls(plans)

    def plan_for_product_id(self, product_id: str | None) -> PlanType:
        if not product_id:
            return PlanType.UNKNOWN
        return self._plans.get(product_id.strip().lower(), PlanType.UNKNOWN)

    def plan_for_product_ids(self, product_ids: frozenset[str]) -> PlanType:
        """Plan of a purchase; the first recognized id in sorted order wins."""
        for product_id in sorted(product_ids):
            plan = self.plan_for_product_id(product_id)
            if plan != PlanType.UNKNOWN:
                return plan
        return PlanType.UNKNOWN

    def is_lifetime(self, product_ids: frozenset[str]) -> bool:
        return any(self.plan_for_product_id(p) == PlanType.LIFETIME for p in product_ids)

    def sort_priority(self, product: Product) -> int:
        return PLAN_PRIORITY[self.plan_for_product_id(product.product_id)]

    def sort_products(self, products: list[Product]) -> list[Product]:
        """Stable sort: Monthly < Annual < Lifetime < anything else."""
        return sorted(products, key=self.sort_priority)
