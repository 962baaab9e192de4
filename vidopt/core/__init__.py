"""Core modules for vidopt."""

from vidopt.core.encoder import FFmpegEncoder
from vidopt.core.title_resolver import ResolvedTitle, resolve_title

__all__ = ["FFmpegEncoder", "ResolvedTitle", "resolve_title"]
