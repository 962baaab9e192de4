"""Output naming - template-driven output filenames for converted files."""

import logging
import re
from pathlib import Path

from vidopt.models.job import ConversionSettings, MediaInfo

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATE = "{title} ({year})"

_INVALID_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def quality_label(height: int | None) -> str:
    """Map a frame height onto the usual release label."""
    if not height:
        return "SD"
    if height >= 2160:
        return "4K"
    if height >= 1080:
        return "1080p"
    if height >= 720:
        return "720p"
    return "SD"


def sanitize_filename(name: str) -> str:
    """Remove characters that are invalid in filenames on any major OS."""
    cleaned = _INVALID_CHARS.sub("", name)
    cleaned = re.sub(r"\s{2,}", " ", cleaned)
    return cleaned.strip(" .")


def generate_output_name(
    title: str,
    year: str | None = None,
    media: MediaInfo | None = None,
    codec: str | None = None,
    template: str = DEFAULT_TEMPLATE,
) -> str:
    """Render ``template`` into a filename stem (no extension).

    Supported placeholders: {title}, {year}, {quality}, {codec}. Missing
    values collapse to nothing, as do the empty "()" and "[]" they leave.
    """
    values = {
        "title": title,
        "year": year or "",
        "quality": quality_label(media.height if media else None),
        "codec": codec or (media.video_codec if media and media.video_codec else ""),
    }

    try:
        rendered = template.format(**values)
    except (KeyError, IndexError, ValueError) as e:
        logger.warning(f"Invalid filename template {template!r} ({e}); using default")
        rendered = DEFAULT_TEMPLATE.format(**values)

    rendered = rendered.replace("()", "").replace("[]", "")
    return sanitize_filename(rendered) or sanitize_filename(title) or "output"


def build_output_path(
    source_path: str,
    settings: ConversionSettings,
    fallback_name: str,
    default_output_dir: str | None = None,
) -> str:
    """Resolve where the encoder should write the converted file.

    Directory priority: per-job ``output_dir``, then the preference default,
    then the source file's directory. Never returns the source path itself.
    """
    source = Path(source_path)

    directory = settings.output_dir or default_output_dir or str(source.parent)
    stem = sanitize_filename(settings.output_name or "") or fallback_name or source.stem
    extension = settings.container.lstrip(".") or "mp4"

    output = Path(directory) / f"{stem}.{extension}"
    if output == source:
        output = Path(directory) / f"{stem}.converted.{extension}"
    return str(output)
