"""TMDB lookup and metadata auto-selection."""

from vidopt.matcher.metadata_matcher import MatchOutcome, MetadataMatcher
from vidopt.matcher.tmdb_client import TmdbClient

__all__ = ["MatchOutcome", "MetadataMatcher", "TmdbClient"]
