"""
Sync pipeline.

Entry points behind the HTTP and CLI triggers. Each run writes a ledger row,
emits audit log events, optionally runs under a wall-clock budget and returns
counts, diagnostics and warnings. Dry runs execute the same write path in a
unit of work that is rolled back at the end.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session, sessionmaker

from pnl_sync.clients.retry import RetryingTransport
from pnl_sync.clients.sp_api_client import SpApiClient
from pnl_sync.core.cache import TTLCache
from pnl_sync.core.config import Settings, SpApiConnectionConfig, resolve_connection_config, settings
from pnl_sync.core.logging import audit_logger, get_logger
from pnl_sync.core.time import date_key, format_iso, utcnow
from pnl_sync.db.models import SyncRunStatus, SyncRunType
from pnl_sync.db.session import UnitOfWork
from pnl_sync.metrics.daily_summary import recompute_daily_summary, resolve_marketplace_id
from pnl_sync.sync.finances import fetch_financial_events
from pnl_sync.sync.ledger import finish_sync_run, start_sync_run
from pnl_sync.sync.orders import compute_order_window, fetch_orders_with_items
from pnl_sync.sync.writer import persist_financial_events, persist_order_entries

logger = get_logger(__name__)

FULL_SYNC_DEFAULT_DAYS = 120

ORDERS_PAGE_LIMIT_WARNING = "Orders page limit reached before exhausting upstream pages."
FINANCES_PAGE_LIMIT_WARNING = (
    "Financial events page limit reached before exhausting upstream pages."
)


class SyncTimeoutError(Exception):
    """Raised when a run exceeds its wall-clock budget."""

    pass


class SyncRequest(BaseModel):
    """
    Parameters of one sync trigger.

    Accepts snake_case or camelCase keys (``maxOrdersWithItems``).
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        extra="ignore",
    )

    days: Optional[int] = Field(default=None, ge=1, le=180)
    marketplace_id: Optional[str] = Field(default=None, min_length=1)
    max_pages: Optional[int] = Field(default=None, ge=1, le=100)
    max_orders: Optional[int] = Field(default=None, ge=1, le=5000)
    max_orders_with_items: Optional[int] = Field(default=None, ge=1, le=5000)
    finances_max_pages: Optional[int] = Field(default=None, ge=1, le=100)
    dry_run: bool = False


@dataclass
class SyncResult:
    run_id: str
    run_type: str
    request_id: str
    marketplace_id: Optional[str]
    dry_run: bool
    orders: Optional[dict[str, Any]] = None
    finances: Optional[dict[str, Any]] = None
    summary: Optional[dict[str, Any]] = None
    limits_applied: dict[str, Any] = field(default_factory=dict)
    truncation_flags: dict[str, bool] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)
    duration_ms: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "run_type": self.run_type,
            "request_id": self.request_id,
            "marketplace_id": self.marketplace_id,
            "dry_run": self.dry_run,
            "orders": self.orders,
            "finances": self.finances,
            "summary": self.summary,
            "diagnostics": {
                "limits_applied": self.limits_applied,
                "truncation_flags": self.truncation_flags,
            },
            "warnings": self.warnings,
            "duration_ms": self.duration_ms,
        }


ClientFactory = Callable[[SpApiConnectionConfig], Any]


class SyncPipeline:
    """
    Runs orders, finances and daily-summary syncs against one database.

    Examples:
        >>> pipeline = SyncPipeline(session_factory)
        >>> result = await pipeline.run_full_sync(SyncRequest(days=30))
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        client_factory: Optional[ClientFactory] = None,
        transport: Optional[RetryingTransport] = None,
        source_settings: Optional[Settings] = None,
        token_cache: Optional[TTLCache] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        """
        Initialize pipeline.

        Args:
            session_factory: Session factory of the target database
            client_factory: Builds the SP-API client for a connection config
            transport: Retry policy for upstream pages (orders use it with the
                orders base delay, finances with the default base delay)
            source_settings: Settings to read credentials and defaults from
            token_cache: Access-token cache shared by every client
            clock: Current UTC time
        """
        self.session_factory = session_factory
        self.settings = source_settings or settings
        self.token_cache = token_cache if token_cache is not None else TTLCache()
        self.client_factory = client_factory or self._default_client_factory
        self.transport = transport or RetryingTransport(
            attempts=self.settings.retry_attempts,
            base_delay_ms=self.settings.retry_base_delay_ms,
            max_delay_ms=self.settings.retry_max_delay_ms,
        )
        self.clock = clock

    def _default_client_factory(self, config: SpApiConnectionConfig) -> SpApiClient:
        return SpApiClient(config, token_cache=self.token_cache)

    def _limits(self, request: SyncRequest) -> dict[str, int]:
        return {
            "max_pages": request.max_pages or self.settings.sync_max_pages,
            "max_orders": request.max_orders or self.settings.sync_max_orders,
            "max_orders_with_items": (
                request.max_orders_with_items or self.settings.sync_max_orders_with_items
            ),
            "finances_max_pages": request.finances_max_pages or self.settings.finances_max_pages,
        }

    async def _sync_orders(
        self,
        client: Any,
        config: SpApiConnectionConfig,
        days: int,
        limits: dict[str, int],
        uow: UnitOfWork,
        result: SyncResult,
    ) -> None:
        created_after, created_before = compute_order_window(days, self.clock())

        fetched = await fetch_orders_with_items(
            client,
            created_after,
            created_before=created_before,
            max_pages=limits["max_pages"],
            max_orders=limits["max_orders"],
            max_orders_with_items=limits["max_orders_with_items"],
            item_concurrency=self.settings.item_fetch_concurrency,
            page_size=self.settings.sync_page_size,
            transport=self.transport.with_options(
                base_delay_ms=self.settings.orders_retry_base_delay_ms
            ),
        )
        counts = persist_order_entries(uow, fetched.entries, config.marketplace_id)
        diagnostics = fetched.diagnostics

        if diagnostics.page_limit_hit:
            result.warnings.append(ORDERS_PAGE_LIMIT_WARNING)
        if diagnostics.orders_skipped_for_items > 0:
            result.warnings.append(
                f"Skipped order-item fetch for {diagnostics.orders_skipped_for_items} "
                "orders due to maxOrdersWithItems."
            )
        result.warnings.extend(fetched.warnings)

        result.truncation_flags.update(
            {
                "orders_page_limit_hit": diagnostics.page_limit_hit,
                "orders_order_limit_hit": diagnostics.order_limit_hit,
                "orders_items_skipped": diagnostics.orders_skipped_for_items > 0,
            }
        )
        result.orders = {
            "marketplace_id": config.marketplace_id,
            "created_after": format_iso(created_after),
            "created_before": format_iso(created_before),
            "dry_run": uow.dry_run,
            "orders_fetched": len(fetched.entries),
            "orders_upserted": counts.orders_upserted,
            "order_items_upserted": counts.order_items_upserted,
            "products_upserted": counts.products_upserted,
            "orders_skipped_invalid": counts.orders_skipped_invalid,
            "refunds_reallocated": counts.refunds_reallocated,
            "diagnostics": diagnostics.to_dict(),
        }

    async def _sync_finances(
        self,
        client: Any,
        config: SpApiConnectionConfig,
        days: int,
        limits: dict[str, int],
        uow: UnitOfWork,
        result: SyncResult,
    ) -> None:
        now = self.clock()
        posted_after, posted_before = compute_order_window(days, now)

        fetched = await fetch_financial_events(
            client,
            posted_after,
            posted_before=posted_before,
            max_pages=limits["finances_max_pages"],
            page_size=self.settings.sync_page_size,
            transport=self.transport,
            collected_at=now,
        )
        counts = persist_financial_events(
            uow,
            fetched.events,
            config.marketplace_id,
            batch_size=self.settings.sync_batch_size,
        )
        diagnostics = fetched.diagnostics

        if diagnostics.page_limit_hit:
            result.warnings.append(FINANCES_PAGE_LIMIT_WARNING)
        if diagnostics.events_missing_posted_date > 0:
            result.warnings.append(
                f"Dated {diagnostics.events_missing_posted_date} financial events at "
                "collection time because they carry no posted date."
            )
        if counts.refunds_unattributed > 0:
            result.warnings.append(
                f"Left {counts.refunds_unattributed} refund events unattributed "
                "because their orders have no weighted items."
            )

        result.truncation_flags["finances_page_limit_hit"] = diagnostics.page_limit_hit
        result.finances = {
            "marketplace_id": config.marketplace_id,
            "posted_after": format_iso(posted_after),
            "posted_before": format_iso(posted_before),
            "dry_run": uow.dry_run,
            "events_fetched": diagnostics.events_fetched,
            "events_upserted": counts.events_upserted,
            "events_linked": counts.events_linked,
            "order_items_marked_refunded": counts.order_items_marked_refunded,
            "refunds_allocated": counts.refunds_allocated,
            "refunds_unattributed": counts.refunds_unattributed,
            "unattributed_event_keys": counts.unattributed_event_keys,
            "diagnostics": diagnostics.to_dict(),
        }

    def _recompute_summary(
        self,
        marketplace_id: str,
        days: int,
        uow: UnitOfWork,
        result: SyncResult,
    ) -> None:
        with uow.transaction() as session:
            summary = recompute_daily_summary(
                session,
                marketplace_id=marketplace_id,
                days=days,
                today=date_key(self.clock()),
            )
        result.summary = summary.to_dict()

    async def _execute(
        self,
        run_type: SyncRunType,
        request: SyncRequest,
        days: int,
        result: SyncResult,
    ) -> None:
        limits = self._limits(request)
        result.limits_applied = limits

        with UnitOfWork(self.session_factory, dry_run=request.dry_run) as uow:
            if run_type == SyncRunType.DAILY_SUMMARY:
                marketplace_id = resolve_marketplace_id(
                    request.marketplace_id or self.settings.sp_api_marketplace_id
                )
                result.marketplace_id = marketplace_id
                self._recompute_summary(marketplace_id, days, uow, result)
                return

            config = resolve_connection_config(self.settings, request.marketplace_id)
            result.marketplace_id = config.marketplace_id

            async with self.client_factory(config) as client:
                if run_type in (SyncRunType.FULL, SyncRunType.ORDERS):
                    await self._sync_orders(client, config, days, limits, uow, result)
                if run_type in (SyncRunType.FULL, SyncRunType.FINANCES):
                    await self._sync_finances(client, config, days, limits, uow, result)

            if run_type == SyncRunType.FULL:
                self._recompute_summary(config.marketplace_id, days, uow, result)

    async def _run(
        self,
        run_type: SyncRunType,
        request: SyncRequest,
        default_days: int,
        request_id: Optional[str] = None,
    ) -> SyncResult:
        request_id = request_id or str(uuid.uuid4())
        days = request.days or default_days

        run = start_sync_run(
            self.session_factory,
            run_type,
            request_id,
            marketplace_id=request.marketplace_id or self.settings.sp_api_marketplace_id,
            days=days,
            dry_run=request.dry_run,
            limits=self._limits(request),
            started_at=self.clock(),
        )
        result = SyncResult(
            run_id=run.id,
            run_type=run_type.value,
            request_id=request_id,
            marketplace_id=run.marketplace_id,
            dry_run=request.dry_run,
        )

        audit_logger.log_sync_started(
            run_type.value,
            request_id,
            run_id=run.id,
            marketplace_id=run.marketplace_id,
            days=days,
            dry_run=request.dry_run,
        )

        execution: Awaitable[None] = self._execute(run_type, request, days, result)
        timeout = self.settings.sync_timeout_seconds

        try:
            if timeout:
                try:
                    await asyncio.wait_for(execution, timeout=timeout)
                except asyncio.TimeoutError as e:
                    raise SyncTimeoutError(
                        f"Sync run exceeded its budget of {timeout} seconds"
                    ) from e
            else:
                await execution
        except Exception as e:
            finished = finish_sync_run(
                self.session_factory,
                run.id,
                SyncRunStatus.FAILED,
                warnings=result.warnings,
                error_message=str(e) or type(e).__name__,
                marketplace_id=result.marketplace_id,
                finished_at=self.clock(),
            )
            audit_logger.log_sync_failed(
                run_type.value,
                request_id,
                duration_ms=finished.duration_ms if finished else 0,
                error=e,
                run_id=run.id,
            )
            raise

        finished = finish_sync_run(
            self.session_factory,
            run.id,
            SyncRunStatus.SUCCESS,
            warnings=result.warnings,
            marketplace_id=result.marketplace_id,
            finished_at=self.clock(),
        )
        result.duration_ms = finished.duration_ms if finished else None

        audit_logger.log_sync_completed(
            run_type.value,
            request_id,
            duration_ms=result.duration_ms or 0,
            warnings_count=len(result.warnings),
            run_id=run.id,
            dry_run=request.dry_run,
            truncation_flags=result.truncation_flags,
        )
        return result

    async def run_full_sync(
        self, request: Optional[SyncRequest] = None, request_id: Optional[str] = None
    ) -> SyncResult:
        """
        Orders, then financial events, then daily summaries for the same window.

        Args:
            request: Window, limits and dry-run flag (``days`` defaults to 120)
            request_id: Correlation id (generated when absent)

        Raises:
            ConfigError: If SP-API credentials or the marketplace are missing
            SyncTimeoutError: If the wall-clock budget is exceeded
        """
        return await self._run(
            SyncRunType.FULL, request or SyncRequest(), FULL_SYNC_DEFAULT_DAYS, request_id
        )

    async def run_orders_sync(
        self, request: Optional[SyncRequest] = None, request_id: Optional[str] = None
    ) -> SyncResult:
        """Collect and persist orders with their line items."""
        return await self._run(
            SyncRunType.ORDERS, request or SyncRequest(), self.settings.sync_default_days, request_id
        )

    async def run_finances_sync(
        self, request: Optional[SyncRequest] = None, request_id: Optional[str] = None
    ) -> SyncResult:
        """Collect and persist financial events and refund allocations."""
        return await self._run(
            SyncRunType.FINANCES,
            request or SyncRequest(),
            self.settings.sync_default_days,
            request_id,
        )

    async def run_daily_summary(
        self, request: Optional[SyncRequest] = None, request_id: Optional[str] = None
    ) -> SyncResult:
        """Recompute daily summaries from stored data; no upstream calls."""
        return await self._run(
            SyncRunType.DAILY_SUMMARY,
            request or SyncRequest(),
            self.settings.sync_default_days,
            request_id,
        )
