"""Wiring of the escrow components for the API.

Builds the coordinator, dispute resolver and marketplace service from settings
once per process. Routes receive them through the ``Services`` dependency, so
tests can swap in in-memory collaborators with ``app.dependency_overrides``.
"""

from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, HTTPException, status

from sobek.escrow.chain import Web3ChainGateway
from sobek.escrow.coordinator import EscrowCoordinator
from sobek.escrow.disputes import DisputeResolver, ResolutionStatus
from sobek.escrow.storage import LedgerStore
from sobek.escrow.supabase_storage import SupabaseLedgerStore
from sobek.escrow.timer import HttpTimerService, InMemoryTimerService
from sobek.marketplace import MarketplaceService
from sobek.notify import LoggingNotifier, TelegramNotifier
from sobek.reputation import ReputationRecorder, SupabaseTierLog

from .config import Settings, get_settings
from .database import get_supabase_client
from .logging_config import get_logger, log_escrow_event

logger = get_logger("sobek.services")


@dataclass
class EscrowServices:
    store: LedgerStore
    coordinator: EscrowCoordinator
    resolver: DisputeResolver
    marketplace: MarketplaceService


def build_services(settings: Settings) -> EscrowServices:
    """Assemble production collaborators.

    Raises:
        ValueError: a required setting is missing. In-process timers are
            only allowed with ``debug`` on.
    """
    config = settings.escrow_config()
    client = get_supabase_client(settings)
    store = SupabaseLedgerStore(client)

    chain = Web3ChainGateway(config, settings.arbiter_private_key or "")

    if settings.timer_service_url:
        timer = HttpTimerService(
            settings.timer_service_url,
            api_token=settings.timer_service_token,
            memo_prefix=config.timer_memo_prefix,
            timeout=config.timer_timeout_seconds,
        )
    elif settings.debug:
        logger.warning("TIMER_SERVICE_URL not set; using in-process timers (debug mode)")
        timer = InMemoryTimerService()
    else:
        # In-process timers die with the worker, leaving escrows without auto-release
        raise ValueError("TIMER_SERVICE_URL is required outside debug mode")

    if settings.telegram_bot_token:
        notifier = TelegramNotifier(store, settings.telegram_bot_token)
    else:
        notifier = LoggingNotifier()

    coordinator = EscrowCoordinator(
        store,
        chain,
        timer,
        reputation=ReputationRecorder(store, SupabaseTierLog(client)),
        notifier=notifier,
        config=config,
    )
    return EscrowServices(
        store=store,
        coordinator=coordinator,
        resolver=DisputeResolver(coordinator),
        marketplace=MarketplaceService(coordinator, config),
    )


_services: EscrowServices | None = None


def get_services(settings: Annotated[Settings, Depends(get_settings)]) -> EscrowServices:
    """FastAPI dependency for the escrow services."""
    global _services
    if _services is None:
        try:
            _services = build_services(settings)
        except ValueError as e:
            logger.error(f"Escrow services unavailable: {e}")
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Escrow services are not configured",
            )
    return _services


# Type alias for dependency injection
Services = Annotated[EscrowServices, Depends(get_services)]


async def resolve_dispute_action(
    services: EscrowServices, transaction_id: str, resolution: str
) -> dict:
    """Resolve a dispute from the server-rendered admin UI.

    Same resolver path as ``POST /api/v1/admin/resolve-dispute``; returns an
    ``{"error", "tx_hash", ...}`` dict instead of an HTTP response.
    """
    if resolution not in ("refund", "release"):
        return {"error": "Resolution must be 'refund' or 'release'", "tx_hash": None}

    result = await services.resolver.resolve(transaction_id, resolution)
    log_escrow_event(
        logger,
        "admin_action.resolve_dispute",
        transaction_id,
        resolution=resolution,
        kind=result.kind.value,
        tx_hash=result.tx_hash,
    )
    if result.kind == ResolutionStatus.RESOLVED:
        return {"error": None, "tx_hash": result.tx_hash, "status": result.status.value}
    return {
        "error": result.message,
        "tx_hash": result.tx_hash,
        "needs_manual_intervention": result.needs_manual_intervention,
    }
