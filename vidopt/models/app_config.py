"""Application preferences stored in SQLite.

The orchestration core only ever reads these (default output directory,
default preset, TMDB key). The settings dialog writes them through the
config route.
"""

from sqlmodel import Field, SQLModel


class AppConfig(SQLModel, table=True):
    """User-configurable preferences stored in database."""

    __tablename__ = "app_config"

    id: int | None = Field(default=None, primary_key=True)

    # Output
    default_output_dir: str = ""  # Empty = next to the source file
    default_preset: str = "balanced"
    filename_template: str = "{title} ({year})"

    # Tools (empty string = use PATH)
    ffmpeg_path: str = ""
    ffprobe_path: str = ""

    # TMDB API (for title metadata)
    tmdb_api_key: str = ""
    tmdb_language: str = "en-US"
