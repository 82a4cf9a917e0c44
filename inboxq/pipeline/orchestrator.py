"""
Email Processor - one inbox-to-calendar pipeline run for one user.

Orchestrates between:
- EmailFetcher (fetch collaborator)
- ProcessedEmailLedger (idempotency)
- EventTodoExtractor (AI collaborator)
- persist_extraction (event/todo store)
- cleanup_past_items (sweeper)
- DeliveryEngine (calendar delivery)

Steps run strictly in order: fetch, partition, extract, persist, sweep,
deliver, mark processed. Anything that fails before persistence aborts the run
with no side effects; after persistence the run always reaches the ledger.
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any, NoReturn

from pydantic import ValidationError

from inboxq.config import DELIVERY_MAX_RETRIES
from inboxq.events.delivery import DeliveryEngine
from inboxq.events.models import CleanupResult, utc_now
from inboxq.events.repository import PersistOutcome, persist_extraction
from inboxq.events.sweeper import cleanup_past_items
from inboxq.infrastructure.idempotency import ProcessedEmailLedger
from inboxq.observability.logging import get_logger
from inboxq.observability.structured import EventType, StructuredLogger
from inboxq.observability.telemetry import counter, time_block
from inboxq.pipeline.collaborators import (
    DeliveryGate,
    EmailFetcher,
    EventTodoExtractor,
    always_enabled,
)
from inboxq.pipeline.errors import (
    ErrorDetail,
    ErrorKind,
    ExtractionError,
    FetchError,
    PersistenceError,
    PipelineError,
)
from inboxq.pipeline.models import Email, ExtractionBatch, ProcessingOptions, ProcessingResult

logger = get_logger(__name__)


class EmailProcessor:
    """
    Pipeline orchestrator.

    Collaborators are injected; the processor holds no per-run state, so one
    instance can serve every user.
    """

    def __init__(
        self,
        fetcher: EmailFetcher,
        extractor: EventTodoExtractor,
        delivery_engine: DeliveryEngine | None = None,
        delivery_gate: DeliveryGate = always_enabled,
        max_retries: int = DELIVERY_MAX_RETRIES,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.fetcher = fetcher
        self.extractor = extractor
        self.delivery_engine = delivery_engine
        self.delivery_gate = delivery_gate
        self.max_retries = max_retries
        self.clock = clock
        self.ledger = ProcessedEmailLedger

    async def process_emails(
        self,
        user_id: str,
        auth: Any,
        options: ProcessingOptions | None = None,
    ) -> ProcessingResult:
        """
        Run the pipeline for one user.

        Args:
            user_id: Owner of everything the run reads and writes
            auth: Opaque credentials passed through to collaborators
            options: Date range, batch bound, AI provider, dry-run flag

        Returns:
            ProcessingResult (success=True even when delivery or the sweep
            reported errors)

        Raises:
            FetchError: fetch collaborator failed
            ExtractionError: extraction collaborator failed
            PersistenceError: ledger or store write failed
            Each carries the failed result on .result

        Side Effects:
            - Inserts events, todos and ledger rows (not on dry runs)
            - Deletes stale events and auto-completes stale todos
            - Calls the calendar through the delivery engine
        """
        options = options or ProcessingOptions()
        run_id = uuid.uuid4().hex
        started = time.perf_counter()
        slog = StructuredLogger(session_id=run_id, user_id=user_id)
        result = ProcessingResult(run_id=run_id, dry_run=options.dry_run)
        run = _Run(user_id=user_id, result=result, slog=slog, started=started)

        counter("pipeline.runs")
        slog.log_event(
            EventType.RUN_START,
            date_range=options.date_range,
            days_back=options.date_range.days_back,
            max_results=options.max_results,
            dry_run=options.dry_run,
        )
        logger.info(
            "Starting email processing for user %s (%s, max=%d, provider=%s, dry_run=%s)",
            user_id,
            options.date_range.description,
            options.max_results,
            options.ai_provider,
            options.dry_run,
        )

        with time_block("pipeline.run"):
            # 1. Fetch
            try:
                emails = await self.fetcher.fetch_emails(
                    auth, options.date_range, options.max_results
                )
            except Exception as exc:
                self._abort(run, FetchError, exc, "fetch", EventType.FETCH_ERROR)
            emails = self._bound(emails, options.max_results)
            result.emails_fetched = len(emails)

            if not emails:
                logger.info("No emails to process for user %s", user_id)
                return self._finish(run)

            # 2. Partition against the ledger
            try:
                unprocessed, skipped = self.ledger.partition(user_id, emails)
            except Exception as exc:
                self._abort(run, PersistenceError, exc, "partition", EventType.LEDGER_ERROR)
            result.emails_skipped = len(skipped)
            slog.emails_fetched(len(emails), len(skipped))

            if not unprocessed:
                logger.info("All %d emails already processed for user %s", len(emails), user_id)
                return self._finish(run)

            # 3. Extract once over the whole batch
            try:
                batch = await self.extractor.extract(unprocessed, options.ai_provider)
                batch = self._coerce_batch(batch)
            except Exception as exc:
                self._abort(run, ExtractionError, exc, "extract", EventType.EXTRACT_ERROR)
            slog.log_event(EventType.EXTRACT_OK, events=len(batch.events), todos=len(batch.todos))
            if batch.is_empty():
                logger.info(
                    "No events or todos in %d emails for user %s", len(unprocessed), user_id
                )

            if options.dry_run:
                result.emails_processed = len(unprocessed)
                result.events_created = len(batch.events)
                result.todos_created = len(batch.todos)
                logger.info(
                    "Dry run for user %s: would persist %d events and %d todos",
                    user_id,
                    len(batch.events),
                    len(batch.todos),
                )
                return self._finish(run)

            # 4. Persist in one transaction
            try:
                outcome = persist_extraction(user_id, batch.events, batch.todos, now=self.clock())
            except Exception as exc:
                self._abort(run, PersistenceError, exc, "persist", EventType.PERSIST_ERROR)
            result.events_created = len(outcome.events)
            result.todos_created = len(outcome.todos)
            slog.log_event(
                EventType.PERSIST_OK, events=result.events_created, todos=result.todos_created
            )

            # 5. Sweep, then 6. deliver what survived it
            cleanup = self._sweep(user_id, result, slog)
            if cleanup is not None:
                await self._deliver(user_id, auth, outcome, cleanup, options, result, slog)

            # 7. Mark every unprocessed email, whatever delivery did
            try:
                self.ledger.mark_processed_batch(
                    user_id, [email.id for email in unprocessed], now=self.clock()
                )
            except Exception as exc:
                self._abort(run, PersistenceError, exc, "mark_processed", EventType.LEDGER_ERROR)
            result.emails_processed = len(unprocessed)
            slog.log_event(EventType.LEDGER_MARKED, count=len(unprocessed))

        return self._finish(run)

    @staticmethod
    def _bound(emails: Sequence[Email], max_results: int) -> list[Email]:
        """Cap the batch and drop repeated ids (first occurrence wins)."""
        unique: dict[str, Email] = {}
        for email in emails:
            unique.setdefault(email.id, email)
        return list(unique.values())[:max_results]

    @staticmethod
    def _coerce_batch(batch: Any) -> ExtractionBatch:
        if isinstance(batch, ExtractionBatch):
            return batch
        try:
            return ExtractionBatch.model_validate(batch)
        except ValidationError as exc:
            raise ValueError(f"extractor returned an unusable batch: {exc}") from exc

    def _sweep(
        self, user_id: str, result: ProcessingResult, slog: StructuredLogger
    ) -> CleanupResult | None:
        """Run the sweeper; a failure is reported and disables delivery for this run."""
        try:
            cleanup = cleanup_past_items(user_id, now=self.clock(), max_retries=self.max_retries)
        except Exception as exc:
            logger.error("Sweep failed for user %s, skipping delivery: %s", user_id, exc)
            slog.step_error(EventType.SWEEP_ERROR, exc)
            result.errors.append(
                ErrorDetail(kind=ErrorKind.PERSISTENCE, message=str(exc), step="sweep")
            )
            return None

        result.events_removed = cleanup.events_removed
        result.todos_completed = cleanup.todos_completed
        slog.log_event(
            EventType.SWEEP_OK,
            events_removed=cleanup.events_removed,
            todos_completed=cleanup.todos_completed,
        )
        return cleanup

    async def _deliver(
        self,
        user_id: str,
        auth: Any,
        outcome: PersistOutcome,
        cleanup: CleanupResult,
        options: ProcessingOptions,
        result: ProcessingResult,
        slog: StructuredLogger,
    ) -> None:
        swept = set(cleanup.event_ids)
        remaining = [event_id for event_id in outcome.event_ids if event_id not in swept]
        if not remaining:
            return

        if self.delivery_engine is None:
            slog.log_event(EventType.DELIVERY_SKIPPED, reason="no_engine", pending=len(remaining))
            return

        try:
            enabled = self.delivery_gate(user_id)
        except Exception as exc:
            logger.error("Delivery gate failed for user %s: %s", user_id, exc)
            slog.step_error(EventType.DELIVERY_ERROR, exc, step="delivery_gate")
            result.errors.append(
                ErrorDetail(kind=ErrorKind.DELIVERY, message=str(exc), step="delivery_gate")
            )
            return

        if not enabled:
            logger.info(
                "Calendar delivery disabled for user %s; %d events left pending",
                user_id,
                len(remaining),
            )
            slog.log_event(EventType.DELIVERY_SKIPPED, reason="disabled", pending=len(remaining))
            return

        try:
            sync = await self.delivery_engine.sync_events(
                user_id, auth, remaining, max_retries=self.max_retries, timezone=options.timezone
            )
        except Exception as exc:
            logger.error("Delivery pass failed for user %s: %s", user_id, exc)
            slog.step_error(EventType.DELIVERY_ERROR, exc, step="deliver")
            result.errors.append(
                ErrorDetail(kind=ErrorKind.DELIVERY, message=str(exc), step="deliver")
            )
            return

        result.events_synced = sync.synced
        result.events_failed = sync.failed
        result.errors.extend(sync.errors)
        if sync.circuit_open:
            slog.log_event(EventType.DELIVERY_CIRCUIT_OPEN, skipped=sync.skipped)
        slog.log_event(
            EventType.DELIVERY_DONE,
            synced=sync.synced,
            failed=sync.failed,
            deduplicated=sync.deduplicated,
            skipped=sync.skipped,
        )

    @staticmethod
    def _finish(run: _Run) -> ProcessingResult:
        result = run.result
        result.success = True
        result.processing_time_ms = run.elapsed_ms()
        run.slog.log_event(
            EventType.RUN_DONE,
            fetched=result.emails_fetched,
            processed=result.emails_processed,
            skipped=result.emails_skipped,
            events=result.events_created,
            todos=result.todos_created,
            synced=result.events_synced,
            failed=result.events_failed,
            ms=result.processing_time_ms,
        )
        logger.info(
            "Processing complete for user %s in %dms: %d events, %d todos, %d synced",
            run.user_id,
            result.processing_time_ms,
            result.events_created,
            result.todos_created,
            result.events_synced,
        )
        return result

    @staticmethod
    def _abort(
        run: _Run,
        error_cls: type[PipelineError],
        cause: Exception,
        step: str,
        event_type: EventType,
    ) -> NoReturn:
        """Mark the run failed and raise the typed error carrying the result."""
        result = run.result
        error = error_cls(
            f"{step} failed: {cause}",
            context={
                "step": step,
                "user_id": run.user_id,
                "run_id": result.run_id,
                "emails_fetched": result.emails_fetched,
            },
            result=result,
        )
        result.success = False
        result.errors.append(error.to_detail())
        result.processing_time_ms = run.elapsed_ms()

        counter("pipeline.failures")
        run.slog.step_error(event_type, cause, step=step)
        run.slog.log_event(EventType.RUN_FAILED, step=step)
        logger.error("Processing failed for user %s at %s: %s", run.user_id, step, cause)
        raise error from cause


@dataclass
class _Run:
    """Per-run bookkeeping shared by the step helpers."""

    user_id: str
    result: ProcessingResult
    slog: StructuredLogger
    started: float

    def elapsed_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)
