"""
Catalog Query Pipeline - Two-phase product query.

Phase 1 queries subscriptions, phase 2 one-time products. A failed phase
contributes nothing; the merged list is ordered by plan and replaces the
published catalog.
"""

import re
from collections.abc import Awaitable, Callable

from structlog import get_logger

from entitlements.config import ConfigurationError, Settings, get_settings
from entitlements.models.domain import Product, ProductType
from entitlements.observability.metrics import metrics
from entitlements.services.billing_provider import BillingProvider
from entitlements.services.observable import ObservableValue
from entitlements.services.plan_types import PlanCatalog

logger = get_logger(__name__)

# Google Play product id rules
PRODUCT_ID_PATTERN = re.compile(r"^[a-z0-9][a-z0-9._]*$")


def valid_product_ids(product_ids: list[str], product_type: ProductType) -> list[str]:
    """Drop blank or malformed ids, logging each as a configuration error."""
    valid: list[str] = []
    for product_id in product_ids:
        if PRODUCT_ID_PATTERN.match(product_id):
            valid.append(product_id)
            continue
        error = ConfigurationError(f"Invalid {product_type.value} product id: {product_id!r}")
        logger.error("catalog_product_id_invalid", product_id=product_id, error=str(error))
        metrics.record_error("ConfigurationError", "catalog_query")
    return valid


class CatalogQueryPipeline:
    """Queries the configured catalog and publishes it as an observable list."""

    def __init__(
        self,
        provider: BillingProvider,
        plans: PlanCatalog,
        is_ready: Callable[[], bool],
        connect: Callable[[], Awaitable[None]],
        settings: Settings | None = None,
    ) -> None:
        settings = settings or get_settings()
        self.provider = provider
        self.plans = plans
        self.is_ready = is_ready
        self.connect = connect
        self.subscription_ids = settings.subscription_ids
        self.one_time_ids = settings.one_time_ids
        self.products: ObservableValue[list[Product]] = ObservableValue([])

    async def _query_phase(self, product_ids: list[str], product_type: ProductType) -> list[Product]:
        ids = valid_product_ids(product_ids, product_type)
        if not ids:
            logger.warning("catalog_phase_skipped", product_type=product_type.value)
            return []

        details = await self.provider.query_product_details(ids, product_type)
        metrics.catalog_queries_total.labels(
            phase=product_type.value, success=str(details.result.ok)
        ).inc()

        if not details.result.ok:
            logger.warning(
                "catalog_phase_failed",
                product_type=product_type.value,
                response_code=details.result.response_code.name,
                debug_message=details.result.debug_message,
            )
            return []
        return details.products

    async def query_products(self) -> list[Product]:
        """
        Query both phases and publish the ordered catalog.

        When the provider is not ready this triggers a connection and returns
        the previously published list unchanged.
        """
        if not self.is_ready():
            logger.info("catalog_query_deferred_not_ready")
            await self.connect()
            return self.products.value

        subscriptions = await self._query_phase(self.subscription_ids, ProductType.SUBSCRIPTION)
        one_time = await self._query_phase(self.one_time_ids, ProductType.ONE_TIME)

        products = self.plans.sort_products(subscriptions + one_time)
        for product in products:
            logger.info(
                "catalog_product_available",
                product_id=product.product_id,
                product_type=product.product_type.value,
                display_price=product.display_price,
            )

        self.products.set(products)
        return products

    def find(self, product_id: str) -> Product | None:
        for product in self.products.value:
            if product.product_id == product_id:
                return product
        return None
