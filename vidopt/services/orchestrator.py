"""Orchestrator - the single entry point for presentation layers.

Wires the job store, scheduler, progress router, matcher and broadcasters
together once. The HTTP routes and WebSocket handlers only ever talk to the
module-level ``orchestrator`` instance.
"""

import logging
from pathlib import Path
from typing import Any

from fastapi import WebSocket
from pydantic import BaseModel

from vidopt.api.websocket import ConnectionManager
from vidopt.api.websocket import manager as ws_manager
from vidopt.api.websocket import tray_manager
from vidopt.core.encoder import Encoder, FFmpegEncoder
from vidopt.core.errors import DuplicateJobError, EncoderError
from vidopt.core.naming import generate_output_name
from vidopt.core.presets import get_preset
from vidopt.core.title_resolver import resolve_title
from vidopt.matcher.metadata_matcher import MatchOutcome, MetadataMatcher, MetadataProvider
from vidopt.matcher.tmdb_client import TmdbClient
from vidopt.models.app_config import AppConfig
from vidopt.models.job import (
    ConversionSettings,
    JobRecord,
    MediaInfo,
    MetadataCandidate,
    ResolvedMetadata,
)
from vidopt.services.config_service import get_config
from vidopt.services.event_broadcaster import EventBroadcaster
from vidopt.services.job_state_machine import JobStateMachine
from vidopt.services.job_store import JobStore
from vidopt.services.progress_router import ProgressRouter
from vidopt.services.queue_scheduler import QueueScheduler
from vidopt.services.state_broadcaster import TRAY_SYNC_REQUEST, StateBroadcaster

logger = logging.getLogger(__name__)


class AddFilesResult(BaseModel):
    added: list[JobRecord] = []
    duplicates: list[str] = []  # Source paths already in the queue


class Orchestrator:
    """Manages the lifecycle of conversion jobs."""

    def __init__(
        self,
        encoder: Encoder | None = None,
        provider: MetadataProvider | None = None,
        primary_ws: ConnectionManager | None = None,
        tray_ws: ConnectionManager | None = None,
        tray_sync_interval: float | None = None,
    ) -> None:
        self.store = JobStore()
        self.encoder = encoder or FFmpegEncoder()
        self.state_machine = JobStateMachine(self.store)
        self.progress_router = ProgressRouter(self.store)
        self.scheduler = QueueScheduler(
            self.store,
            self.encoder,
            state_machine=self.state_machine,
            progress_router=self.progress_router,
        )
        self.matcher = MetadataMatcher(provider or TmdbClient())
        self.event_broadcaster = EventBroadcaster(primary_ws or ws_manager)
        self.state_broadcaster = StateBroadcaster(
            self.store, tray_ws or tray_manager, interval=tray_sync_interval
        )
        self._started = False

    # --- Lifecycle ---

    async def start(self) -> None:
        """Load preferences, kill leftover encoders and start broadcasting."""
        if self._started:
            return
        await self.refresh_preferences()
        self.event_broadcaster.attach(self.store)

        killed = await self.scheduler.cleanup()
        if killed:
            logger.info(f"Startup cleanup stopped {killed} orphaned encoder process(es)")

        self.scheduler.start()
        await self.state_broadcaster.start()
        self._started = True
        logger.info("Orchestrator started")

    async def stop(self) -> None:
        """Stop the orchestrator and clean up."""
        await self.state_broadcaster.stop()
        await self.scheduler.shutdown()
        await self.event_broadcaster.detach()
        self._started = False
        logger.info("Orchestrator stopped")

    async def refresh_preferences(self) -> AppConfig:
        """Re-read preferences that affect encoding (tool paths, output dir)."""
        config = await get_config()
        configure = getattr(self.encoder, "configure", None)
        if configure is not None:
            configure(config.ffmpeg_path, config.ffprobe_path)
        self.scheduler.default_output_dir = config.default_output_dir or None
        return config

    # --- Reads ---

    def list_jobs(self) -> list[JobRecord]:
        return self.store.list_jobs()

    def get_job(self, job_id: str) -> JobRecord:
        return self.store.require_job(job_id)

    def get_candidates(self, job_id: str) -> list[MetadataCandidate]:
        return list(self.store.require_job(job_id).candidates)

    # --- Adding files ---

    async def add_files(self, paths: list[str]) -> AddFilesResult:
        """Create an idle job per file, with a proposed name and identity.

        Files already queued (non-terminal job for the same path) are
        reported as duplicates instead of being added twice.
        """
        config = await get_config()
        result = AddFilesResult()

        for raw_path in paths:
            source_path = str(Path(raw_path).expanduser())
            if self.store.find_by_source(source_path) is not None:
                result.duplicates.append(source_path)
                continue

            record = await self._build_job(source_path, config)
            try:
                self.store.add_job(record)
            except DuplicateJobError:
                # Added by a concurrent request while we were probing
                result.duplicates.append(source_path)
                continue
            result.added.append(record)

        logger.info(f"Added {len(result.added)} job(s), {len(result.duplicates)} duplicate(s)")
        return result

    async def _build_job(self, source_path: str, config: AppConfig) -> JobRecord:
        display_name = Path(source_path).name
        resolved = resolve_title(display_name)

        media = await self._probe(source_path)
        outcome = await self.matcher.match(
            resolved.title, resolved.year, config.tmdb_api_key, config.tmdb_language
        )

        settings = get_preset(config.default_preset)
        output_name = self._propose_name(
            resolved.title, resolved.year, outcome.selected, media, settings, config
        )

        return JobRecord(
            source_path=source_path,
            display_name=display_name,
            conversion_settings=settings.model_copy(update={"output_name": output_name}),
            proposed_title=resolved.title,
            proposed_year=resolved.year,
            resolved_metadata=outcome.selected,
            candidates=tuple(outcome.candidates),
            media=media,
        )

    async def _probe(self, source_path: str) -> MediaInfo | None:
        try:
            return await self.encoder.probe(source_path)
        except EncoderError as e:
            logger.warning(f"Could not probe {source_path}: {e}")
            return None

    @staticmethod
    def _propose_name(
        title: str,
        year: str | None,
        metadata: ResolvedMetadata | None,
        media: MediaInfo | None,
        settings: ConversionSettings,
        config: AppConfig,
    ) -> str:
        if metadata is not None and metadata.title:
            title, year = metadata.title, metadata.release_year or year
        codec = None if settings.video_codec == "copy" else settings.video_codec
        return generate_output_name(
            title, year, media=media, codec=codec, template=config.filename_template
        )

    # --- Editing jobs ---

    def update_settings(self, job_id: str, **changes: Any) -> JobRecord:
        """Replace a job's conversion settings with ``changes`` applied.

        Allowed at any status; a converting job keeps encoding with the
        snapshot taken when it was promoted.
        """
        job = self.store.require_job(job_id)
        merged = {**job.conversion_settings.model_dump(), **changes}
        settings = ConversionSettings.model_validate(merged)
        return self.store.update_job(job_id, conversion_settings=settings)

    async def select_metadata(self, job_id: str, candidate: MetadataCandidate) -> JobRecord:
        """Apply the user's manual choice from the disambiguation dialog."""
        job = self.store.require_job(job_id)
        config = await get_config()
        metadata = candidate.to_resolved()

        output_name = self._propose_name(
            job.proposed_title or candidate.title,
            job.proposed_year,
            metadata,
            job.media,
            job.conversion_settings,
            config,
        )
        settings = job.conversion_settings.model_copy(update={"output_name": output_name})
        logger.info(f"Job {job_id}: metadata set to '{candidate.title}' ({candidate.year})")
        return self.store.update_job(
            job_id, resolved_metadata=metadata, conversion_settings=settings
        )

    async def search_metadata(self, query: str, year: str | None = None) -> list[MetadataCandidate]:
        config = await get_config()
        return await self.matcher.search_manual(
            query, config.tmdb_api_key, year=year, language=config.tmdb_language
        )

    async def rematch(self, job_id: str) -> MatchOutcome:
        """Run the automatic lookup again (e.g. after the API key was set)."""
        job = self.store.require_job(job_id)
        config = await get_config()
        outcome = await self.matcher.match(
            job.proposed_title or "", job.proposed_year, config.tmdb_api_key, config.tmdb_language
        )
        fields: dict[str, Any] = {"candidates": tuple(outcome.candidates)}
        if outcome.selected is not None:
            fields["resolved_metadata"] = outcome.selected
        self.store.update_job(job_id, **fields)
        return outcome

    # --- Queue operations ---

    async def enqueue(self, job_id: str) -> JobRecord:
        await self.refresh_preferences()
        return self.scheduler.enqueue(job_id)

    async def start_all(self) -> int:
        await self.refresh_preferences()
        return self.scheduler.start_all()

    def dequeue(self, job_id: str) -> JobRecord:
        return self.scheduler.dequeue(job_id)

    async def cancel(self, job_id: str) -> bool:
        return await self.scheduler.cancel(job_id)

    def reset(self, job_id: str, requeue: bool = False) -> JobRecord:
        return self.scheduler.reset(job_id, requeue=requeue)

    async def remove(self, job_id: str) -> bool:
        return await self.scheduler.remove(job_id)

    async def cleanup(self) -> int:
        return await self.scheduler.cleanup()

    # --- Tray sync ---

    async def handle_tray_message(self, websocket: WebSocket, message: dict[str, Any]) -> None:
        if message.get("type") == TRAY_SYNC_REQUEST:
            await self.state_broadcaster.handle_sync_request(websocket)
        else:
            logger.debug(f"Ignoring tray message: {message}")


# Singleton instance
orchestrator = Orchestrator()
