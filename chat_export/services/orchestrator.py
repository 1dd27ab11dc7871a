"""Export orchestrator: one cancellable export job as a state machine.

    idle -> scraping -> resolving_assets -> encoding -> delivering -> done

``failed`` is reachable from every non-idle, non-terminal stage and
``cancelled`` from scraping, resolving_assets and encoding. Nothing is
delivered unless the job reaches ``delivering``.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from datetime import datetime
from typing import Callable

import httpx

from chat_export.core.config import settings
from chat_export.exceptions import (
    AssetResolverUnavailableError,
    EmptySelectionError,
    EncodingError,
    ExportCancelledError,
    ExportError,
    ExportInProgressError,
    InvalidTransitionError,
)
from chat_export.models.asset import Asset
from chat_export.models.conversation import Conversation, ImageBlock, Turn
from chat_export.models.job import (
    ExportJob,
    ExportResult,
    ExportWarning,
    JobStage,
    StatusUpdate,
)
from chat_export.services.assets import AssetResolver
from chat_export.services.cancellation import CancellationToken
from chat_export.services.delivery import DeliverySink
from chat_export.services.encoders import get_encoder, parse_format
from chat_export.services.encoders.base import EncodedOutput
from chat_export.services.naming import NamingContext, NamingResolver
from chat_export.services.normalizer import NormalizationResult, Normalizer
from chat_export.services.selection import SelectionManager
from chat_export.services.snapshot import Snapshot, take_snapshot

logger = logging.getLogger(__name__)

TRANSITIONS: dict[JobStage, frozenset[JobStage]] = {
    JobStage.IDLE: frozenset({JobStage.SCRAPING}),
    JobStage.SCRAPING: frozenset({JobStage.RESOLVING_ASSETS, JobStage.FAILED, JobStage.CANCELLED}),
    JobStage.RESOLVING_ASSETS: frozenset({JobStage.ENCODING, JobStage.FAILED, JobStage.CANCELLED}),
    JobStage.ENCODING: frozenset({JobStage.DELIVERING, JobStage.FAILED, JobStage.CANCELLED}),
    JobStage.DELIVERING: frozenset({JobStage.DONE, JobStage.FAILED}),
    JobStage.DONE: frozenset({JobStage.IDLE}),
    JobStage.FAILED: frozenset({JobStage.IDLE}),
    JobStage.CANCELLED: frozenset({JobStage.IDLE}),
}

# Progress reached when each stage starts
STAGE_PROGRESS: dict[JobStage, float] = {
    JobStage.IDLE: 0.0,
    JobStage.SCRAPING: 0.0,
    JobStage.RESOLVING_ASSETS: 0.1,
    JobStage.ENCODING: 0.6,
    JobStage.DELIVERING: 0.9,
    JobStage.DONE: 1.0,
}

StatusListener = Callable[[StatusUpdate], None]


class ExportOrchestrator:
    """Run export jobs one at a time and report their status.

    Usage:
        sink = MemoryDeliverySink()
        orchestrator = ExportOrchestrator(sink)
        orchestrator.add_listener(lambda update: print(update.stage, update.progress))
        result = await orchestrator.run(snapshot, ExportJob(format=ExportFormat.MARKDOWN))
    """

    def __init__(
        self,
        sink: DeliverySink,
        *,
        normalizer: Normalizer | None = None,
        naming: NamingResolver | None = None,
        resolver_factory: Callable[..., AssetResolver] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._sink = sink
        self._normalizer = normalizer or Normalizer()
        self._naming = naming or NamingResolver()
        self._resolver_factory = resolver_factory or functools.partial(AssetResolver, transport=transport)

        self._listeners: list[StatusListener] = []
        self._stage = JobStage.IDLE
        self._progress = 0.0
        self._warnings: list[ExportWarning] = []
        self._token: CancellationToken | None = None
        self._running = False
        self._job_count = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def stage(self) -> JobStage:
        return self._stage

    @property
    def progress(self) -> float:
        return self._progress

    @property
    def is_running(self) -> bool:
        return self._running

    def add_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def cancel(self, reason: str = "cancelled by user") -> bool:
        """Request cancellation of the running job.

        Returns:
            True if a cancellable job was signalled; False when idle, already
            terminal, or delivering (delivery is never interrupted).
        """
        if self._token is None or self._stage not in (
            JobStage.SCRAPING,
            JobStage.RESOLVING_ASSETS,
            JobStage.ENCODING,
        ):
            return False
        self._token.cancel(reason)
        return True

    async def run(self, source: Snapshot | str | bytes, job: ExportJob) -> ExportResult:
        """Execute one export job to a terminal state.

        Job-level failures are reported in the returned ExportResult rather
        than raised.

        Raises:
            ExportInProgressError: If another job is still running.
            InvalidTransitionError: On an internal state machine error.
        """
        if self._running:
            raise ExportInProgressError("An export is already in progress")

        self._running = True
        self._job_count += 1
        token = CancellationToken()
        self._token = token
        self._reset()

        try:
            return await self._execute(source, job, token)
        except InvalidTransitionError:
            raise
        except ExportCancelledError as e:
            return self._finish_cancelled(str(e))
        except ExportError as e:
            return self._finish_failed(e.code, str(e))
        except Exception as e:
            logger.exception("Unexpected error during export: %s", e)
            return self._finish_failed("export_error", f"Unexpected error: {e!s}")
        finally:
            self._running = False
            self._token = None

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _execute(self, source: Snapshot | str | bytes, job: ExportJob, token: CancellationToken) -> ExportResult:
        # --- scraping ---
        self._transition(JobStage.SCRAPING)
        export_format = parse_format(job.format)
        logger.info("Starting %s export job #%d", export_format.value, self._job_count)
        snapshot = source if isinstance(source, Snapshot) else take_snapshot(source)
        normalized = await self._normalizer.normalize_async(snapshot, token)
        self._add_warnings(normalized.warnings)
        turns = self._select_turns(normalized.conversation, job)
        token.raise_if_cancelled()

        # --- resolving_assets ---
        self._transition(JobStage.RESOLVING_ASSETS)
        assets = await self._resolve_assets(normalized.conversation, turns, job, token)
        token.raise_if_cancelled()

        # --- encoding ---
        self._transition(JobStage.ENCODING)
        output = await self._encode(normalized.conversation, turns, assets, job, token)
        # Output of a job cancelled mid-encode is discarded here
        token.raise_if_cancelled()
        self._add_warnings(output.warnings)
        filename = self._resolve_filename(normalized, job, output.extension)

        # --- delivering ---
        self._transition(JobStage.DELIVERING)
        await self._sink.deliver(output.data, filename, output.mime_type)

        summary = failure_summary(turns, assets)
        self._transition(JobStage.DONE, message=summary)
        logger.info(
            "Export complete: %s (%s, %d bytes, %d warnings)",
            filename,
            output.mime_type,
            output.size_bytes,
            len(self._warnings),
        )
        return ExportResult(
            state=JobStage.DONE,
            filename=filename,
            mime_type=output.mime_type,
            size_bytes=output.size_bytes,
            warnings=list(self._warnings),
            message=summary,
        )

    def _select_turns(self, conversation: Conversation, job: ExportJob) -> list[Turn]:
        selection = SelectionManager(conversation)
        if job.selection:
            selection.select(job.selection, order=job.selection)
        else:
            selection.select_all()

        turns = selection.resolve()
        if not turns:
            raise EmptySelectionError()
        missing = len(set(job.selection) - set(conversation.turn_ids))
        if missing:
            self._add_warnings(
                [
                    ExportWarning(
                        code="selection_pruned",
                        message=f"{missing} selected turns no longer exist and were skipped",
                    )
                ]
            )
        return turns

    async def _resolve_assets(
        self,
        conversation: Conversation,
        turns: list[Turn],
        job: ExportJob,
        token: CancellationToken,
    ) -> dict[str, Asset]:
        refs = conversation.asset_refs(turns)
        if not refs or not job.options.resolve_assets:
            return {}

        try:
            resolver = self._resolver_factory(token=token, concurrency=job.options.asset_concurrency)
        except Exception as e:
            raise AssetResolverUnavailableError(f"Asset resolver could not start: {e!s}") from e
        token.on_cancel(resolver.cancel)

        start = STAGE_PROGRESS[JobStage.RESOLVING_ASSETS]
        span = STAGE_PROGRESS[JobStage.ENCODING] - start

        def on_progress(completed: int, total: int) -> None:
            self._set_progress(start + span * completed / total)
            self._emit(message=f"Resolved {completed}/{total} assets")

        async with resolver:
            assets = await resolver.resolve_all(refs, on_progress=on_progress)
        self._add_warnings(resolver.warnings)
        return assets

    async def _encode(
        self,
        conversation: Conversation,
        turns: list[Turn],
        assets: dict[str, Asset],
        job: ExportJob,
        token: CancellationToken,
    ) -> EncodedOutput:
        export_format = parse_format(job.format)
        encoder = get_encoder(export_format)
        try:
            return await asyncio.to_thread(encoder, conversation, turns, assets, job.options, token)
        except (EncodingError, ExportCancelledError):
            raise
        except Exception as e:
            logger.exception("Encoder for %s raised unexpectedly", export_format.value)
            raise EncodingError(export_format.value, str(e)) from e

    def _resolve_filename(self, normalized: NormalizationResult, job: ExportJob, extension: str) -> str:
        template = job.naming_template or settings.default_naming_template or "{title}"
        context = NamingContext(
            title=normalized.conversation.title,
            site=normalized.profile.export_base_name,
            index=self._job_count,
            timestamp=datetime.now(),
        )
        return self._naming.resolve(template, context, extension)

    # ------------------------------------------------------------------
    # State and status
    # ------------------------------------------------------------------

    def _reset(self) -> None:
        if self._stage.is_terminal:
            self._transition(JobStage.IDLE, emit=False)
        self._progress = 0.0
        self._warnings = []

    def _transition(self, target: JobStage, message: str | None = None, reason: str | None = None, emit: bool = True) -> None:
        if target not in TRANSITIONS[self._stage]:
            raise InvalidTransitionError(self._stage.value, target.value)
        logger.info("Export stage %s -> %s", self._stage.value, target.value)
        self._stage = target
        if target in STAGE_PROGRESS:
            self._set_progress(STAGE_PROGRESS[target])
        if emit:
            self._emit(message=message, reason=reason)

    def _set_progress(self, value: float) -> None:
        # Never moves backwards within a job
        self._progress = max(self._progress, min(1.0, value))

    def _add_warnings(self, warnings: list[ExportWarning]) -> None:
        self._warnings.extend(warnings)

    def _emit(self, message: str | None = None, reason: str | None = None) -> None:
        update = StatusUpdate(
            stage=self._stage,
            progress=self._progress,
            warnings=tuple(self._warnings),
            reason=reason,
            message=message,
        )
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception as e:
                logger.warning("Status listener raised: %s", e)

    def _finish_failed(self, reason: str, message: str) -> ExportResult:
        logger.error("Export failed in stage %s (%s): %s", self._stage.value, reason, message)
        self._transition(JobStage.FAILED, message=message, reason=reason)
        return ExportResult(
            state=JobStage.FAILED,
            warnings=list(self._warnings),
            reason=reason,
            message=message,
        )

    def _finish_cancelled(self, message: str) -> ExportResult:
        self._transition(JobStage.CANCELLED, message=message, reason=ExportCancelledError.code)
        return ExportResult(
            state=JobStage.CANCELLED,
            warnings=list(self._warnings),
            reason=ExportCancelledError.code,
            message=message,
        )


def failure_summary(turns: list[Turn], assets: dict[str, Asset]) -> str | None:
    """Human-readable count of assets that could not be loaded."""
    failed = [url for url, asset in assets.items() if not asset.is_resolved]
    if not failed:
        return None

    image_refs = {b.asset_ref for turn in turns for b in turn.blocks if isinstance(b, ImageBlock)}
    images = sum(1 for url in failed if url in image_refs)
    others = len(failed) - images
    parts = []
    if images:
        parts.append(f"{images} image{'s' if images != 1 else ''}")
    if others:
        parts.append(f"{others} attachment{'s' if others != 1 else ''}")
    return f"{' and '.join(parts)} could not be loaded"
