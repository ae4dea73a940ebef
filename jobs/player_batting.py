"""
Career Batting Stats MapReduce Job

Reads Lahman Batting.csv (one line per player season stint) and produces a
career stat line for every MLB player.

Batting.csv has 24 fields; the trailing G_old field is not always present.
Header and example input line:
    playerID,yearID,stint,teamID,lgID,G,G_batting,AB,R,H,2B,3B,HR,RBI,SB,CS,BB,SO,IBB,HBP,SH,SF,GIDP,G_old
    aaronha01,1954,1,ML1,NL,122,122,468,58,131,27,6,13,69,2,2,28,39,,3,6,4,13,122

Interface:
    iterator_fn(file_bytes, metadata) -> (line_number, line) pairs, numbered from 1
    map_function(line_number, line) -> [(playerId, "G,AB,R,...,GIDP")]
    reduce_function(playerId, [stat lines]) -> (playerId, career stat line)

Legend:
    G=games, AB=at bats, R=runs, H=hits, 2B=doubles, 3B=triples, HR=home runs,
    RBI=runs batted in, SB=stolen bases, CS=caught stealing, BB=base on balls,
    SO=strikeouts, IBB=intentional walks, HBP=hit by pitch, SH=sacrifice hits,
    SF=sacrifice flies, GIDP=grounded into double play

This file is executed in a fresh namespace by the worker, so it must not
import anything from the rest of the project.
"""

import logging
import re
from typing import Iterable, Iterator, List, Optional, Tuple

LOG = logging.getLogger("player_batting")

JOB_NAME = "Career Batting Stats"

DELIMITER = ","

# number of fields in Batting.csv
FIELD_COUNT = 24

# (name, source column, position in the stat line)
BATTING_STATS = (
    ("G", 5, 0),
    ("AB", 7, 1),
    ("R", 8, 2),
    ("H", 9, 3),
    ("2B", 10, 4),
    ("3B", 11, 5),
    ("HR", 12, 6),
    ("RBI", 13, 7),
    ("SB", 14, 8),
    ("CS", 15, 9),
    ("BB", 16, 10),
    ("SO", 17, 11),
    ("IBB", 18, 12),
    ("HBP", 19, 13),
    ("SH", 20, 14),
    ("SF", 21, 15),
    ("GIDP", 22, 16),
)

STAT_NAMES = tuple(name for name, _, _ in BATTING_STATS)

_INTEGER = re.compile(r"[+-]?\d+")


class BattingDataError(Exception):
    """Base class for data problems found while running the job."""


class MalformedRecordError(BattingDataError):
    """A Batting.csv line has too few fields to extract a stat line from."""

    def __init__(self, line_number: int, expected: int, actual: int):
        super().__init__(
            f"Line {line_number} contains bad data! Should have at least "
            f"{expected} fields but only found {actual}"
        )
        self.line_number = line_number
        self.expected = expected
        self.actual = actual


class ParseError(BattingDataError):
    """A stat line handed to the reducer holds a non-integer field."""

    def __init__(self, key: str, value: str):
        super().__init__(f"Player {key}: cannot parse {value!r} as an integer")
        self.key = key
        self.value = value


class ShapeMismatchError(BattingDataError):
    """A stat line handed to the reducer has the wrong number of fields."""

    def __init__(self, key: str, expected: int, actual: int):
        super().__init__(
            f"Player {key}: expected {expected} stats but found {actual}"
        )
        self.key = key
        self.expected = expected
        self.actual = actual


def iterator_fn(file_bytes: bytes, metadata: dict) -> Iterator[Tuple[int, str]]:
    """
    Split an input file into (line_number, line) pairs for map_function.

    Lines are numbered from 1, so the header of each file is line 1.

    Args:
        file_bytes: The raw bytes of the input file.
        metadata: Dictionary with 'file_path' and 'size' (not used here).
    """
    # undecodable bytes become U+FFFD so one bad record cannot fail the task
    content = file_bytes.decode("utf-8", errors="replace")
    for line_number, line in enumerate(content.splitlines(), start=1):
        yield line_number, line


def extract_stats(line_number: int, line: str) -> Optional[Tuple[str, str]]:
    """
    Pull the tracked stats out of one Batting.csv line.

    Returns None for header lines and raises MalformedRecordError when the
    line is too short. Blank stats resolve to 0; anything else is passed
    through untouched and checked by the reducer.
    """
    if line_number <= 1:
        return None

    batting_data = line.split(DELIMITER)
    # G_old (last field) isn't always present in the data
    if len(batting_data) < FIELD_COUNT - 1:
        raise MalformedRecordError(line_number, FIELD_COUNT - 1, len(batting_data))

    stats = []
    for _, column, _ in BATTING_STATS:
        value = batting_data[column]
        stats.append(value if value else "0")
    return batting_data[0], DELIMITER.join(stats)


def map_function(input_key: int, input_value: str) -> List[Tuple[str, str]]:
    """
    Map phase: emit (playerId, stat line) for one season stint.

    Args:
        input_key: Line number of the record within its file (header is 1).
        input_value: The raw Batting.csv line.

    Returns:
        A single (playerId, "G,AB,R,H,2B,3B,HR,RBI,SB,CS,BB,SO,IBB,HBP,SH,SF,GIDP")
        pair, or an empty list for header and malformed lines.
    """
    try:
        pair = extract_stats(input_key, input_value)
    except MalformedRecordError as e:
        LOG.warning("%s", e)
        return []
    return [pair] if pair else []


def parse_stats(key: str, stat_line: str) -> List[int]:
    """Parse a comma separated stat line into integers, in BATTING_STATS order."""
    fields = stat_line.split(DELIMITER)
    if len(fields) != len(BATTING_STATS):
        raise ShapeMismatchError(key, len(BATTING_STATS), len(fields))
    stats = []
    for field in fields:
        if not _INTEGER.fullmatch(field):
            raise ParseError(key, field)
        stats.append(int(field))
    return stats


def format_stats(stats: Iterable[int]) -> str:
    return DELIMITER.join(str(stat) for stat in stats)


def reduce_function(key: str, values: Iterable[str]) -> Iterator[Tuple[str, str]]:
    """
    Reduce phase: sum every season stint of a player into a career stat line.

    Args:
        key: The playerId.
        values: Stat lines produced by map_function for this player.

    Yields:
        (playerId, career stat line) once all values are consumed. Nothing is
        yielded for an empty group.
    """
    career_stats = None
    for stat_line in values:
        stats = parse_stats(key, stat_line)
        if career_stats is None:
            career_stats = [0] * len(BATTING_STATS)
        for i, stat in enumerate(stats):
            career_stats[i] += stat

    if career_stats is not None:
        yield key, format_stats(career_stats)
