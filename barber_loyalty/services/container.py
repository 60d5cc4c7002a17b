"""
Service Container - Dependency Injection Container

Simple DI container for managing service instances and their dependencies.
Uses lazy loading to only instantiate services when first accessed.
"""

from dataclasses import dataclass, field
from typing import Optional
import logging

from barber_loyalty import config

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """
    Simple dependency injection container for services.

    Services are lazy-loaded on first access via properties.
    Collaborators left as None are built from configuration:
    - ledger: HttpVisitLedger on LEDGER_BASE_URL
    - catalog: HttpCatalogStore on CATALOG_BASE_URL
    - redemption_store: PostgresRedemptionStore on the shared pool
    """

    # Infrastructure dependencies (injected, or built from config on first use)
    db: Optional[object] = None  # Database instance
    ledger: Optional[object] = None  # VisitLedger
    catalog: Optional[object] = None  # CatalogStore
    redemption_store: Optional[object] = None  # RedemptionStore

    # Services (lazy-loaded via properties)
    _engine: Optional[object] = field(default=None, init=False, repr=False)
    _loyalty_service: Optional[object] = field(default=None, init=False, repr=False)

    def __post_init__(self):
        if self.ledger is None:
            from barber_loyalty.integrations.ledger import HttpVisitLedger
            self.ledger = HttpVisitLedger(config.LEDGER_BASE_URL)
        if self.catalog is None:
            from barber_loyalty.integrations.catalog_client import HttpCatalogStore
            self.catalog = HttpCatalogStore(config.CATALOG_BASE_URL)
        if self.redemption_store is None:
            from barber_loyalty.db.connection import db as default_db
            from barber_loyalty.db.redemption_store import PostgresRedemptionStore
            if self.db is None:
                self.db = default_db
            self.redemption_store = PostgresRedemptionStore(self.db)

    @property
    def engine(self):
        """Get RedemptionEngine instance (lazy-loaded)"""
        if self._engine is None:
            from barber_loyalty.engine.redemption_engine import RedemptionEngine
            self._engine = RedemptionEngine(self.redemption_store, self.catalog)
            logger.debug("RedemptionEngine instantiated")
        return self._engine

    @property
    def loyalty_service(self):
        """Get LoyaltyService instance (lazy-loaded)"""
        if self._loyalty_service is None:
            from barber_loyalty.engine.leaderboard import weights_from_config
            from barber_loyalty.services.loyalty_service import LoyaltyService
            self._loyalty_service = LoyaltyService(
                ledger=self.ledger,
                catalog=self.catalog,
                engine=self.engine,
                weights=weights_from_config(),
                subject_timeout=config.SUBJECT_TIMEOUT_SECONDS,
                leaderboard_limit=config.LEADERBOARD_LIMIT,
            )
            logger.debug("LoyaltyService instantiated")
        return self._loyalty_service

    @property
    def uses_database(self) -> bool:
        from barber_loyalty.db.redemption_store import PostgresRedemptionStore
        return isinstance(self.redemption_store, PostgresRedemptionStore)

    async def aclose(self) -> None:
        """Close HTTP clients owned by the collaborators"""
        for collaborator in (self.ledger, self.catalog):
            close = getattr(collaborator, "aclose", None)
            if close is not None:
                await close()


# Global container instance (initialized at API startup)
_container: Optional[ServiceContainer] = None


def get_container() -> ServiceContainer:
    """
    Get the global service container.

    Returns:
        ServiceContainer: The global container instance

    Raises:
        RuntimeError: If container not initialized (call init_container first)
    """
    if _container is None:
        raise RuntimeError(
            "Service container not initialized. "
            "Call init_container() at startup before using services."
        )
    return _container


def init_container(container: Optional[ServiceContainer] = None) -> ServiceContainer:
    """
    Initialize the global service container.

    Args:
        container: Pre-built container (tests, embedding); built from
            configuration when omitted

    Returns:
        ServiceContainer: The initialized container
    """
    global _container

    _container = container or ServiceContainer()

    logger.info("Service container initialized")
    return _container


def reset_container() -> None:
    """Drop the global container (tests)"""
    global _container
    _container = None
