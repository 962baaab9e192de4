"""Title Resolver - best-effort title/year extraction from release filenames.

Scene-style names ("The.Matrix.1999.1080p.BluRay.x264-GROUP.mkv") put the
title first, then the year, then release tags. Parsing stops at the first
release tag; ambiguous names are left to metadata disambiguation.
"""

import re
from dataclasses import dataclass
from pathlib import PurePath, PureWindowsPath

# Resolution, source, codec, audio and language tags. Never part of a title.
RELEASE_MARKERS = frozenset(
    {
        "MULTI", "VF", "VF2", "VFF", "VO", "VOSTFR", "FRENCH", "TRUEFRENCH",
        "1080P", "720P", "480P", "2160P", "4K",
        "BLURAY", "BLU-RAY", "WEB", "WEBDL", "WEB-DL", "WEBRIP", "DVDRIP", "HDRIP",
        "BDRIP", "HDTV", "AMZN", "NF", "DSNP",
        "HEVC", "X264", "X265", "H264", "H265", "AV1", "VP9",
        "DTS", "AC3", "EAC3", "AAC", "TRUEHD", "FLAC", "OPUS", "DDP5", "DDP", "HDMA",
        "HDR", "10BIT", "ULSHD", "REMUX", "REPACK", "PROPER",
    }
)  # fmt: skip

# Edition noise, skipped without ending the title
NOISE_WORDS = frozenset({"REMASTERED", "EXTENDED", "DIRECTOR", "DIRECTORS", "CUT", "UNRATED"})

VIDEO_EXTENSIONS = frozenset(
    {
        "mkv", "mp4", "m4v", "avi", "mov", "wmv", "flv", "webm", "ts", "m2ts",
        "mts", "mpg", "mpeg", "vob", "ogv", "3gp", "divx", "iso",
    }
)  # fmt: skip

FALLBACK_TOKEN_COUNT = 5
MIN_TITLE_LENGTH = 2

_SEPARATORS = re.compile(r"[\s._\-()\[\]{}]+")
_YEAR = re.compile(r"^(19|20)\d{2}$")


@dataclass(frozen=True)
class ResolvedTitle:
    title: str
    year: str | None = None


def _is_marker(token: str) -> bool:
    return token.upper() in RELEASE_MARKERS


def _is_noise(token: str) -> bool:
    return token.upper().replace("'", "") in NOISE_WORDS


def _strip_path(filename: str) -> str:
    """Drop directories and the extension, accepting both path flavours."""
    name = PureWindowsPath(filename).name if "\\" in filename else PurePath(filename).name
    stem, dot, ext = name.rpartition(".")
    if dot and stem and ext.lower() in VIDEO_EXTENSIONS:
        return stem
    return name


def tokenize(filename: str) -> list[str]:
    return [t for t in _SEPARATORS.split(_strip_path(filename)) if t]


def resolve_title(filename: str) -> ResolvedTitle:
    """Extract ``{title, year}`` from a raw filename.

    A 19xx/20xx token is taken as the year when a title is already
    accumulated and the token is the last one before a release tag (or the
    end of the name). Otherwise it is part of the title, which keeps names
    like "2001.A.Space.Odyssey" and "Blade.Runner.2049" intact.
    """
    tokens = tokenize(filename)
    title_words: list[str] = []
    year: str | None = None

    for index, token in enumerate(tokens):
        if _is_marker(token):
            break
        if _is_noise(token):
            continue

        if _YEAR.match(token) and title_words:
            following = next((t for t in tokens[index + 1 :] if not _is_noise(t)), None)
            if following is None or _is_marker(following):
                year = token
                break

        title_words.append(token)

    title = " ".join(title_words).strip()

    if len(title) < MIN_TITLE_LENGTH:
        fallback: list[str] = []
        for token in tokens[:FALLBACK_TOKEN_COUNT]:
            if _is_marker(token):
                break
            fallback.append(token)
        title = " ".join(fallback).strip()

    return ResolvedTitle(title=title, year=year)
