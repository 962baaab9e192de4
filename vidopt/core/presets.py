# core/presets.py
"""Named conversion presets selectable through the ``default_preset`` preference."""

from vidopt.models.job import AudioStrategy, ConversionSettings, SubtitleStrategy

DEFAULT_PRESET = "balanced"

PRESETS: dict[str, ConversionSettings] = {
    "balanced": ConversionSettings(video_codec="libx264", crf=23, preset="fast"),
    "quality": ConversionSettings(video_codec="libx265", crf=20, preset="slow"),
    "fast": ConversionSettings(video_codec="libx264", crf=28, preset="veryfast"),
    "nvenc": ConversionSettings(video_codec="h264_nvenc", crf=23, preset="p4"),
    "remux": ConversionSettings(
        video_codec="copy",
        crf=None,
        preset=None,
        audio_strategy=AudioStrategy.COPY_ALL,
        audio_codec="copy",
        subtitle_strategy=SubtitleStrategy.COPY_ALL,
        container="mkv",
    ),
}


def get_preset(name: str | None) -> ConversionSettings:
    """Return the preset called ``name``, falling back to the default preset."""
    return PRESETS.get(name or DEFAULT_PRESET, PRESETS[DEFAULT_PRESET])
