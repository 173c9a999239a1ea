"""Engagement sync service.

Sequences fetch -> reshape -> upsert -> downstream trigger for each sync
entry point, keeps a SyncAttempt row in sync_logs and time-boxes the run.
Every entry point returns a SyncResult; Mixpanel rate limits end a run
gracefully, keeping whatever the warehouse already holds.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from mixpanel_engagement._internal.config import SyncSettings
from mixpanel_engagement._internal.date_utils import (
    lookback_range,
    previous_day_range,
    validate_date_range,
)
from mixpanel_engagement._internal.identity import IdentityNormalizer
from mixpanel_engagement._internal.rate_limiter import RateLimiter
from mixpanel_engagement._internal.reshape import (
    TRACKED_EVENTS,
    PairReshaper,
    extract_funnel_tree,
    reshape_first_events,
    reshape_funnel,
    reshape_user_creator_copies,
    reshape_user_profiles,
)
from mixpanel_engagement._internal.upsert import TimeBudget, upsert_batches
from mixpanel_engagement._internal.walker import extract_series
from mixpanel_engagement._literal_types import MetricRole, SyncStatus
from mixpanel_engagement.exceptions import (
    ConfigError,
    EngagementSyncError,
    RateLimitError,
    ReshapeError,
)
from mixpanel_engagement.types import (
    CreatorPair,
    FirstEventTime,
    FunnelCompletion,
    PairReshapeResult,
    PortfolioCreatorPair,
    SyncAttempt,
    SyncResult,
    UpsertResult,
    UserCreatorCopy,
    UserProfile,
)

if TYPE_CHECKING:
    from mixpanel_engagement._internal.api_client import MixpanelAPIClient
    from mixpanel_engagement._internal.storage import WarehouseStorage

_logger = logging.getLogger(__name__)

DownstreamJob = Callable[[], Any]
"""A dependent job started after a successful sync and never awaited."""

ENGAGEMENT_SERIES: dict[MetricRole, tuple[str, str]] = {
    "profile_views": ("profile_views_chart", "Total Profile Views"),
    "pdp_views": ("portfolio_chart", "A. Total PDP Views"),
    "copies": ("portfolio_chart", "B. Total Copies"),
    "liquidations": ("portfolio_chart", "C. Total Liquidations"),
    "subscriptions": ("subscriptions_chart", "Total Subscriptions"),
}
"""Metric role -> (settings attribute holding the chart id, series name)."""

RAW_FILE_KEYS: dict[str, tuple[MetricRole, ...]] = {
    "profileViewsData": ("profile_views",),
    "pdpViewsData": ("pdp_views", "copies", "liquidations"),
    "subscriptionsData": ("subscriptions",),
}
"""Saved raw payload key -> metric roles found in that response."""

USER_CREATOR_COPIES_SERIES = "Total Copies"

FIRST_EVENT_CHARTS: dict[str, tuple[str, str]] = {
    "first_copy": ("first_copy_chart", "Uniques of Copied Portfolio"),
    "kyc_approved": ("kyc_approved_chart", "Uniques of Approved KYC"),
}
"""Event type -> (settings attribute holding the chart id, series name)."""

RATE_LIMITED_MESSAGE = "Mixpanel rate limit reached; using existing data"


@dataclass
class _Run:
    """Mutable bookkeeping for one sync run."""

    source: str
    attempt_id: str
    started_at: datetime
    budget: TimeBudget
    stage: str = "start"
    upserts: list[UpsertResult] = field(default_factory=list)
    stats: dict[str, Any] = field(default_factory=dict)

    @property
    def records_inserted(self) -> int:
        return sum(u.inserted for u in self.upserts)

    @property
    def partial(self) -> bool:
        return any(u.partial for u in self.upserts)


class EngagementSyncService:
    """Orchestrates engagement syncs from Mixpanel into the warehouse.

    Example:
        ```python
        with MixpanelAPIClient(credentials) as client:
            storage = WarehouseStorage(path=Path("engagement.duckdb"))
            service = EngagementSyncService(client, storage, SyncSettings())
            result = service.sync_engagement()
            print(result.message, result.records_inserted)
        ```
    """

    def __init__(
        self,
        api_client: MixpanelAPIClient | None,
        storage: WarehouseStorage,
        settings: SyncSettings | None = None,
        normalizer: IdentityNormalizer | None = None,
        downstream: Sequence[DownstreamJob] | None = None,
        executor: Executor | None = None,
    ) -> None:
        """Initialize the sync service.

        Args:
            api_client: Authenticated Mixpanel API client. None restricts the
                service to process_raw_file.
            storage: Warehouse receiving the records.
            settings: Sync settings. Defaults to SyncSettings().
            normalizer: Creator id normalizer. Defaults to one built from
                settings.creator_aliases.
            downstream: Jobs started fire-and-forget after a successful
                engagement sync.
            executor: Executor running downstream jobs. A small thread pool
                is created on first use when omitted.
        """
        self._api_client = api_client
        self._storage = storage
        self._settings = settings or SyncSettings()
        self._normalizer = normalizer or IdentityNormalizer(
            self._settings.creator_aliases
        )
        self._reshaper = PairReshaper(self._normalizer)
        self._limiter = RateLimiter(self._settings.max_concurrent_requests)
        self._downstream = list(downstream or [])
        self._executor = executor
        self._owns_executor = executor is None

    @property
    def settings(self) -> SyncSettings:
        """Settings in use."""
        return self._settings

    @property
    def rate_limiter(self) -> RateLimiter:
        """Admission gate shared by every fetch of this service."""
        return self._limiter

    def close(self, *, wait: bool = True) -> None:
        """Shut down the downstream executor if this service created it."""
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None

    # =========================================================================
    # Entry points
    # =========================================================================

    def sync_engagement(self) -> SyncResult:
        """Fetch, reshape and upsert creator and portfolio engagement pairs.

        Returns:
            SyncResult; success=False carries the failing stage.
        """

        def work(run: _Run) -> str:
            run.stage = "fetch"
            trees = self._fetch_engagement_trees()
            run.stage = "reshape"
            reshaped = self._reshaper.reshape(trees, run.started_at)
            self._upsert_pairs(run, reshaped)
            self._trigger_downstream(run.source)
            return (
                f"Synced {len(reshaped.portfolio_pairs)} portfolio pairs and "
                f"{len(reshaped.creator_pairs)} creator pairs"
            )

        return self._run("mixpanel_engagement", work)

    def sync_funnels(
        self,
        from_date: str | None = None,
        to_date: str | None = None,
    ) -> SyncResult:
        """Fetch every configured funnel and upsert completion times.

        Args:
            from_date: Start date (YYYY-MM-DD). Defaults to the lookback window.
            to_date: End date (YYYY-MM-DD). Defaults to today.

        Returns:
            SyncResult for the run.
        """
        if from_date is None or to_date is None:
            default_from, default_to = lookback_range(self._settings.lookback_days)
            from_date = from_date or default_from
            to_date = to_date or default_to
        from_date, to_date = validate_date_range(from_date, to_date)

        def work(run: _Run) -> str:
            run.stage = "fetch"
            responses = self._fetch_parallel(
                {
                    funnel_type: (
                        lambda fid=funnel_id: self._client().funnel(
                            fid, from_date, to_date, users=True
                        )
                    )
                    for funnel_type, funnel_id in self._settings.funnels.items()
                }
            )
            run.stage = "reshape"
            completions: list[FunnelCompletion] = []
            for funnel_type, response in responses.items():
                result = reshape_funnel(
                    extract_funnel_tree(response), funnel_type, run.started_at
                )
                completions.extend(result.completions)
                run.stats[funnel_type] = result.to_dict()
            run.stage = "upsert"
            run.upserts.append(
                upsert_batches(
                    self._storage,
                    "time_funnels",
                    completions,
                    FunnelCompletion.CONFLICT_KEY,
                    batch_size=self._settings.batch_size,
                    budget=run.budget,
                )
            )
            return f"Synced {len(completions)} funnel completions"

        return self._run("mixpanel_funnels", work)

    def sync_user_creator_copies(self) -> SyncResult:
        """Fetch the user -> creator copies chart and upsert it."""

        def work(run: _Run) -> str:
            run.stage = "fetch"
            response = self._fetch_report(self._settings.user_creator_copies_chart)
            run.stage = "reshape"
            copies: list[UserCreatorCopy] = reshape_user_creator_copies(
                extract_series(response, USER_CREATOR_COPIES_SERIES),
                run.started_at,
            )
            run.stats["user_creator_copies"] = len(copies)
            run.stage = "upsert"
            run.upserts.append(
                upsert_batches(
                    self._storage,
                    "user_creator_copies",
                    copies,
                    UserCreatorCopy.CONFLICT_KEY,
                    batch_size=self._settings.batch_size,
                    budget=run.budget,
                )
            )
            return f"Synced {len(copies)} user-creator copy rows"

        return self._run("mixpanel_user_creator_copies", work)

    def sync_first_events(self) -> SyncResult:
        """Fetch first-copy and KYC-approved charts and upsert first times."""

        def work(run: _Run) -> str:
            run.stage = "fetch"
            responses = self._fetch_parallel(
                {
                    event_type: (
                        lambda cid=getattr(self._settings, attr): (
                            self._fetch_report_unlimited(cid)
                        )
                    )
                    for event_type, (attr, _) in FIRST_EVENT_CHARTS.items()
                }
            )
            run.stage = "reshape"
            rows: list[FirstEventTime] = []
            for event_type, response in responses.items():
                series = FIRST_EVENT_CHARTS[event_type][1]
                events, unparseable = reshape_first_events(
                    extract_series(response, series), event_type
                )
                rows.extend(events)
                run.stats[event_type] = {
                    "users": len(events),
                    "unparseable_timestamps": unparseable,
                }
            run.stage = "upsert"
            run.upserts.append(
                upsert_batches(
                    self._storage,
                    "user_first_events",
                    rows,
                    FirstEventTime.CONFLICT_KEY,
                    batch_size=self._settings.batch_size,
                    budget=run.budget,
                )
            )
            return f"Synced {len(rows)} first-event rows"

        return self._run("mixpanel_first_events", work)

    def sync_user_profiles(
        self,
        from_date: str | None = None,
        to_date: str | None = None,
    ) -> SyncResult:
        """Export tracked events and upsert one profile row per user.

        Events are streamed from the Export API and grouped as they arrive,
        then the profiles are upserted in batches. Each row describes the
        exported window, so a later sync of another window replaces it.

        Args:
            from_date: Start date (YYYY-MM-DD). Defaults to yesterday.
            to_date: End date (YYYY-MM-DD). Defaults to yesterday.

        Returns:
            SyncResult for the run.
        """
        if from_date is None or to_date is None:
            default_from, default_to = previous_day_range()
            from_date = from_date or default_from
            to_date = to_date or default_to
        from_date, to_date = validate_date_range(from_date, to_date)

        def work(run: _Run) -> str:
            run.stage = "fetch"
            with self._limiter.acquire():
                reshaped = reshape_user_profiles(
                    self._client().export_events(
                        from_date, to_date, events=TRACKED_EVENTS
                    ),
                    run.started_at,
                )
            run.stats["user_profiles"] = reshaped.to_dict()
            run.stage = "upsert"
            run.upserts.append(
                upsert_batches(
                    self._storage,
                    "user_profiles",
                    reshaped.profiles,
                    UserProfile.CONFLICT_KEY,
                    batch_size=self._settings.batch_size,
                    budget=run.budget,
                )
            )
            return (
                f"Synced {len(reshaped.profiles)} user profiles from "
                f"{reshaped.events_seen} events ({from_date} to {to_date})"
            )

        return self._run("mixpanel_user_profiles", work)

    def process_raw_file(self, path: Path) -> SyncResult:
        """Reshape and upsert a saved raw engagement payload.

        The file is a JSON object holding the Insights responses under
        profileViewsData, pdpViewsData and subscriptionsData, plus an
        optional syncStartTime (ISO timestamp) used as synced_at.

        Args:
            path: Path to the saved payload.

        Returns:
            SyncResult; an unreadable file fails at stage "load".
        """

        def work(run: _Run) -> str:
            run.stage = "load"
            payload = load_raw_payload(path)
            synced_at = _parse_sync_time(payload.get("syncStartTime")) or run.started_at
            trees: dict[str, Any] = {}
            for key, roles in RAW_FILE_KEYS.items():
                for role in roles:
                    trees[role] = extract_series(
                        payload.get(key), ENGAGEMENT_SERIES[role][1]
                    )
            run.stage = "reshape"
            reshaped = self._reshaper.reshape(trees, synced_at)
            self._upsert_pairs(run, reshaped)
            self._trigger_downstream(run.source)
            return (
                f"Processed {len(reshaped.portfolio_pairs)} portfolio pairs and "
                f"{len(reshaped.creator_pairs)} creator pairs from {path.name}"
            )

        return self._run("process_raw_file", work)

    # =========================================================================
    # Run bookkeeping
    # =========================================================================

    def _run(self, source: str, work: Callable[[_Run], str]) -> SyncResult:
        run = _Run(
            source=source,
            attempt_id=str(uuid.uuid4()),
            started_at=datetime.now(UTC),
            budget=TimeBudget(
                self._settings.time_budget_seconds,
                self._settings.safety_margin_seconds,
            ),
        )
        _logger.info("Starting %s sync (attempt %s)", source, run.attempt_id)

        try:
            self._record_attempt(run, "in_progress")
        except EngagementSyncError as e:
            _logger.error("Could not create sync log for %s: %s", source, e)
            return SyncResult(
                source=source,
                success=False,
                message=f"Failed to create sync log: {e}",
                stage="sync_log",
                stats={"error": e.to_dict()},
            )

        try:
            message = work(run)
        except RateLimitError as e:
            _logger.warning("%s hit the Mixpanel rate limit: %s", source, e)
            self._finish_attempt(run, "rate_limited", str(e))
            return SyncResult(
                source=source,
                success=True,
                message=RATE_LIMITED_MESSAGE,
                attempt_id=run.attempt_id,
                stage=run.stage,
                rate_limited=True,
                upserts=run.upserts,
                stats={**run.stats, "retry_after": e.retry_after},
            )
        except EngagementSyncError as e:
            _logger.error("%s failed during %s: %s", source, run.stage, e)
            self._finish_attempt(run, "failed", str(e))
            return SyncResult(
                source=source,
                success=False,
                message=str(e),
                attempt_id=run.attempt_id,
                stage=run.stage,
                upserts=run.upserts,
                stats={**run.stats, "error": e.to_dict()},
            )
        except Exception as e:
            _logger.exception("%s failed unexpectedly during %s", source, run.stage)
            self._finish_attempt(run, "failed", str(e))
            return SyncResult(
                source=source,
                success=False,
                message=f"Unexpected error: {e}",
                attempt_id=run.attempt_id,
                stage=run.stage,
                upserts=run.upserts,
                stats={
                    **run.stats,
                    "error": {
                        "code": "UNEXPECTED_ERROR",
                        "type": type(e).__name__,
                        "message": str(e),
                    },
                },
            )

        if run.partial:
            message = f"{message} (partial: time budget reached)"
        self._finish_attempt(run, "completed")
        _logger.info("%s finished in %.1fs: %s", source, run.budget.elapsed, message)
        return SyncResult(
            source=source,
            success=True,
            message=message,
            attempt_id=run.attempt_id,
            partial=run.partial,
            upserts=run.upserts,
            stats=run.stats,
        )

    def _record_attempt(
        self,
        run: _Run,
        status: SyncStatus,
        error_message: str | None = None,
    ) -> None:
        attempt = SyncAttempt(
            id=run.attempt_id,
            source=run.source,
            status=status,
            started_at=run.started_at,
            completed_at=None if status == "in_progress" else datetime.now(UTC),
            records_inserted=run.records_inserted,
            error_message=error_message,
        )
        self._storage.upsert_rows("sync_logs", [attempt.to_row()], ["id"])

    def _finish_attempt(
        self,
        run: _Run,
        status: SyncStatus,
        error_message: str | None = None,
    ) -> None:
        try:
            self._record_attempt(run, status, error_message)
        except EngagementSyncError as e:
            _logger.warning(
                "Could not mark sync attempt %s as %s: %s", run.attempt_id, status, e
            )

    # =========================================================================
    # Fetching
    # =========================================================================

    def _client(self) -> MixpanelAPIClient:
        if self._api_client is None:
            raise ConfigError(
                "Mixpanel credentials are required for this sync",
                details={"hint": "configure an account with 'mpe auth add'"},
            )
        return self._api_client

    def _fetch_report(self, bookmark_id: int) -> dict[str, Any]:
        with self._limiter.acquire():
            return self._client().query_saved_report(bookmark_id)

    def _fetch_report_unlimited(self, bookmark_id: int) -> dict[str, Any]:
        # callers already hold a limiter slot via _fetch_parallel
        return self._client().query_saved_report(bookmark_id)

    def _fetch_parallel(
        self,
        tasks: Mapping[str, Callable[[], dict[str, Any]]],
    ) -> dict[str, dict[str, Any]]:
        """Run fetch callables concurrently through the admission gate.

        Returns:
            Name -> response, in the order of tasks.

        Raises:
            EngagementSyncError: The first fetch failure (RateLimitError
                included) after all fetches have settled.
        """

        def gated(fetch: Callable[[], dict[str, Any]]) -> dict[str, Any]:
            with self._limiter.acquire():
                return fetch()

        with ThreadPoolExecutor(
            max_workers=max(1, len(tasks)), thread_name_prefix="mpe-fetch"
        ) as pool:
            futures = {name: pool.submit(gated, fetch) for name, fetch in tasks.items()}
        return {name: future.result() for name, future in futures.items()}

    def _fetch_engagement_trees(self) -> dict[str, Any]:
        chart_ids = {
            attr: getattr(self._settings, attr)
            for attr, _ in ENGAGEMENT_SERIES.values()
        }
        responses = self._fetch_parallel(
            {
                attr: (lambda cid=chart_id: self._fetch_report_unlimited(cid))
                for attr, chart_id in chart_ids.items()
            }
        )
        return {
            role: extract_series(responses[attr], series)
            for role, (attr, series) in ENGAGEMENT_SERIES.items()
        }

    # =========================================================================
    # Upserts and downstream
    # =========================================================================

    def _upsert_pairs(self, run: _Run, reshaped: PairReshapeResult) -> None:
        run.stats["reshape"] = reshaped.to_dict()
        run.stage = "upsert"
        run.upserts.append(
            upsert_batches(
                self._storage,
                "user_portfolio_creator_engagement",
                reshaped.portfolio_pairs,
                PortfolioCreatorPair.CONFLICT_KEY,
                batch_size=self._settings.portfolio_batch_size,
                budget=run.budget,
            )
        )
        run.upserts.append(
            upsert_batches(
                self._storage,
                "user_creator_engagement",
                reshaped.creator_pairs,
                CreatorPair.CONFLICT_KEY,
                batch_size=self._settings.batch_size,
                budget=run.budget,
            )
        )

    def _trigger_downstream(self, source: str) -> list[Future[Any]]:
        """Start downstream jobs without waiting for them."""
        if not self._downstream:
            return []
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=2, thread_name_prefix="mpe-downstream"
            )

        futures: list[Future[Any]] = []
        for job in self._downstream:
            name = getattr(job, "__name__", repr(job))
            future = self._executor.submit(job)
            future.add_done_callback(
                lambda f, n=name: _log_downstream_outcome(source, n, f)
            )
            futures.append(future)
        _logger.info("Triggered %d downstream jobs after %s", len(futures), source)
        return futures


def _log_downstream_outcome(source: str, name: str, future: Future[Any]) -> None:
    error = future.exception()
    if error is not None:
        _logger.warning("Downstream job %s after %s failed: %s", name, source, error)
    else:
        _logger.debug("Downstream job %s after %s finished", name, source)


def load_raw_payload(path: Path) -> dict[str, Any]:
    """Load a saved raw engagement payload.

    Raises:
        ReshapeError: If the file cannot be read or is not a JSON object.
    """
    try:
        with path.open(encoding="utf-8") as f:
            payload = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ReshapeError(
            f"Cannot read raw payload {path}: {e}",
            stage="load",
            details={"path": str(path)},
        ) from e
    if not isinstance(payload, dict):
        raise ReshapeError(
            f"Raw payload {path} is not a JSON object",
            stage="load",
            details={"path": str(path), "type": type(payload).__name__},
        )
    return payload


def _parse_sync_time(raw: Any) -> datetime | None:
    if not isinstance(raw, str):
        return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        _logger.warning("Ignoring unparseable syncStartTime %r", raw)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
