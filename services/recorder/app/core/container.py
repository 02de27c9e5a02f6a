"""Explicit wiring of the service's components."""

from dataclasses import dataclass
from typing import Optional

from .config import Settings, settings as default_settings
from .logging import get_logger
from ..services.bot_service import BotLifecycleService
from ..services.database_service import DatabaseService
from ..services.provider_client import ProviderClient
from ..services.reconciler import StatusReconciler
from ..services.sweeper import BotSweeper
from ..services.usage_ledger import UsageLedger
from ..services.usage_service import UsageService
from ..services.webhook_service import WebhookIngress

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    """Every long-lived component, built once per process."""
    config: Settings
    db: DatabaseService
    provider: ProviderClient
    reconciler: StatusReconciler
    ingress: WebhookIngress
    sweeper: BotSweeper
    bots: BotLifecycleService
    usage: UsageService

    async def close(self) -> None:
        await self.provider.close()
        await self.db.close()


def build_container(
    config: Optional[Settings] = None,
    db: Optional[DatabaseService] = None,
    provider: Optional[ProviderClient] = None,
) -> ServiceContainer:
    """Build the component graph.

    ``db`` and ``provider`` may be supplied to swap in test doubles; the
    database is not initialized here.
    """
    config = config or default_settings
    db = db or DatabaseService(config)
    provider = provider or ProviderClient.from_settings(config)

    reconciler = StatusReconciler(db, UsageLedger(), config)
    usage = UsageService(db, config)

    container = ServiceContainer(
        config=config,
        db=db,
        provider=provider,
        reconciler=reconciler,
        ingress=WebhookIngress(db, reconciler, config),
        sweeper=BotSweeper(db, provider, reconciler, config),
        bots=BotLifecycleService(db, provider, reconciler, usage, config),
        usage=usage,
    )
    logger.debug("Service container built", service=config.service_name)
    return container
