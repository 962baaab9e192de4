"""Job records - the in-memory state of every file in the conversion queue.

Records are immutable pydantic models. The job store swaps whole records on
every mutation, so a reader holding a record never sees a half-applied update.
"""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    """States in the conversion lifecycle."""

    IDLE = "idle"
    QUEUED = "queued"  # Eligible for automatic promotion
    CONVERTING = "converting"  # At most one job system-wide
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED})


class AudioStrategy(str, Enum):
    COPY_ALL = "copy_all"
    CONVERT_ALL = "convert_all"
    FIRST_TRACK = "first_track"


class SubtitleStrategy(str, Enum):
    COPY_ALL = "copy_all"
    BURN_IN = "burn_in"
    IGNORE = "ignore"


class ConversionSettings(BaseModel):
    """Encoder options for one job. Frozen: updates produce a new value."""

    model_config = ConfigDict(frozen=True)

    video_codec: str = "libx264"
    audio_strategy: AudioStrategy = AudioStrategy.FIRST_TRACK
    subtitle_strategy: SubtitleStrategy = SubtitleStrategy.IGNORE
    audio_codec: str = "aac"
    audio_bitrate: str = "128k"
    crf: int | None = Field(default=23, ge=0, le=51)
    preset: str | None = "fast"
    profile: str | None = None
    tune: str | None = None
    container: str = "mp4"
    output_dir: str | None = None  # None = next to the source file
    output_name: str | None = None  # Without extension; None = proposed name


class ConversionProgress(BaseModel):
    """Live progress of the converting job."""

    model_config = ConfigDict(frozen=True)

    percent: float = 0.0
    frames_or_time: str | None = None  # "frame=1234" or "00:12:34.56"
    speed_factor: float | None = None  # 1.5 == 1.5x realtime
    estimated_time_remaining: float | None = None  # Seconds
    fps: float | None = None
    bitrate: str | None = None


class ProgressEvent(BaseModel):
    """Inbound progress notification from the encoder, keyed by job id."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    percent: float | None = None
    speed: float | None = None
    frames_or_time: str | None = None
    estimated_time_remaining: float | None = None
    fps: float | None = None
    bitrate: str | None = None


class ResolvedMetadata(BaseModel):
    """Identity picked by the metadata matcher or by the user."""

    model_config = ConfigDict(frozen=True)

    external_id: int | str
    title: str | None = None
    poster_ref: str | None = None
    overview: str | None = None
    release_year: str | None = None


class MetadataCandidate(BaseModel):
    """One search result from the metadata provider."""

    model_config = ConfigDict(frozen=True)

    external_id: int | str
    title: str
    year: str | None = None
    overview: str | None = None
    poster_ref: str | None = None
    popularity: float | None = None

    def to_resolved(self) -> ResolvedMetadata:
        return ResolvedMetadata(
            external_id=self.external_id,
            title=self.title,
            poster_ref=self.poster_ref,
            overview=self.overview,
            release_year=self.year,
        )


class MediaInfo(BaseModel):
    """Probed facts about a source file."""

    model_config = ConfigDict(frozen=True)

    duration_seconds: float = 0.0
    width: int | None = None
    height: int | None = None
    video_codec: str | None = None


class ConversionResult(BaseModel):
    """Outcome reported by the encoder for one invocation."""

    model_config = ConfigDict(frozen=True)

    success: bool
    output_path: str | None = None
    error: str | None = None
    duration: float = 0.0  # Wall-clock seconds spent encoding


class EncodeRequest(BaseModel):
    """Frozen snapshot handed to the encoder when a job is promoted."""

    model_config = ConfigDict(frozen=True)

    job_id: str
    input_path: str
    output_path: str
    settings: ConversionSettings
    duration_seconds: float = 0.0


def new_job_id() -> str:
    return uuid4().hex


class JobRecord(BaseModel):
    """One user-submitted file tracked through the conversion lifecycle."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_job_id)
    source_path: str
    display_name: str

    status: JobStatus = JobStatus.IDLE
    progress: ConversionProgress | None = None
    conversion_settings: ConversionSettings = Field(default_factory=ConversionSettings)

    # Naming / identity
    proposed_title: str | None = None
    proposed_year: str | None = None
    resolved_metadata: ResolvedMetadata | None = None
    candidates: tuple[MetadataCandidate, ...] = ()
    media: MediaInfo | None = None

    # Outcome
    result: ConversionResult | None = None
    error: str | None = None  # Normalized, user-facing
    error_detail: str | None = None  # Raw encoder text, for logs

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def with_changes(self, **fields) -> "JobRecord":
        """Return a copy with ``fields`` replaced and ``updated_at`` bumped."""
        fields.setdefault("updated_at", datetime.utcnow())
        return self.model_copy(update=fields)
