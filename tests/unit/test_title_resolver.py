"""Unit tests for the filename title resolver."""

import pytest

from vidopt.core.title_resolver import ResolvedTitle, resolve_title, tokenize


def test_scene_release_name():
    assert resolve_title("The.Matrix.1999.1080p.BluRay.x264-GROUP.mkv") == ResolvedTitle(
        title="The Matrix", year="1999"
    )


@pytest.mark.parametrize(
    "filename,title,year",
    [
        ("Inception_2010_720p_WEBRIP.mp4", "Inception", "2010"),
        ("Le Fabuleux Destin d Amelie Poulain 2001 MULTI VFF 1080p.mkv",
         "Le Fabuleux Destin d Amelie Poulain", "2001"),
        ("Arrival (2016) [2160p] [HDR].mkv", "Arrival", "2016"),
        ("Heat.1995.REMASTERED.1080p.mkv", "Heat", "1995"),
        ("Dune.2021.mkv", "Dune", "2021"),
    ],
)  # fmt: skip
def test_title_and_year(filename, title, year):
    assert resolve_title(filename) == ResolvedTitle(title=title, year=year)


def test_release_tag_ends_title_without_year():
    assert resolve_title("Some.Movie.1080p.WEB-DL.DDP5.1.H264.mkv") == ResolvedTitle(
        title="Some Movie", year=None
    )


def test_leading_year_is_part_of_title():
    result = resolve_title("2001.A.Space.Odyssey.1968.1080p.BluRay.mkv")
    assert result == ResolvedTitle(title="2001 A Space Odyssey", year="1968")


def test_year_followed_by_title_words_stays_in_title():
    result = resolve_title("Blade.Runner.2049.2017.2160p.UHD.mkv")
    assert result == ResolvedTitle(title="Blade Runner 2049", year="2017")


def test_numeric_title_alone():
    assert resolve_title("1917.1080p.x265.mkv") == ResolvedTitle(title="1917", year=None)


def test_noise_words_are_skipped():
    result = resolve_title("Aliens.Directors.Cut.1986.1080p.mkv")
    assert result == ResolvedTitle(title="Aliens", year="1986")


def test_path_components_are_ignored():
    assert resolve_title("/media/in/The.Thing.1982.720p.mkv").title == "The Thing"
    assert resolve_title(r"C:\Videos\Alien.1979.DVDRip.avi").title == "Alien"


def test_short_title_falls_back_to_first_tokens():
    # "A" alone is under two characters; fallback keeps the first tokens
    result = resolve_title("A.Extended.Cut.1080p.mkv")
    assert result == ResolvedTitle(title="A Extended Cut", year=None)


def test_unknown_extension_is_not_stripped():
    assert tokenize("Movie.Name.x264") == ["Movie", "Name", "x264"]


def test_marker_matching_is_case_insensitive():
    assert resolve_title("movie.name.bluray.mkv").title == "movie name"
