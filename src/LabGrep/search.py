"""Regex search with line context over mirrored file contents."""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from typing import Callable, Iterator

from LabGrep.models import FileRecord, ProjectRecord

logger = logging.getLogger(__name__)

ANSI_HIGHLIGHT = "\x1b[1;36m"
ANSI_RESET = "\x1b[0m"


@dataclass
class Match:
    line_number: int  # 1-based
    text: str  # matching line plus its context lines


@dataclass
class SearchHit:
    project: str
    path: str
    match: Match


def ansi_highlight(line: str) -> str:
    return f"{ANSI_HIGHLIGHT}{line}{ANSI_RESET}"


def validate_pattern(pattern: str) -> str | None:
    """Return an error message for an invalid regex, or None if it compiles."""
    try:
        re.compile(pattern)
    except re.error as exc:
        return f"`{pattern}`: {exc}"
    return None


def find_expression(
    pattern: str | re.Pattern[str],
    content: str,
    context: int = 1,
    highlight: Callable[[str], str] | None = None,
) -> list[Match]:
    """Return every line of *content* matching *pattern*.

    Each match carries up to *context* lines before and after it, clamped to
    the start and end of the content. ``re.error`` propagates for an invalid
    pattern.
    """
    regex = re.compile(pattern) if isinstance(pattern, str) else pattern
    context = max(context, 0)
    lines = content.split("\n")

    matches: list[Match] = []
    for i, line in enumerate(lines):
        if not regex.search(line):
            continue
        start = max(i - context, 0)
        end = min(i + context, len(lines) - 1)
        window = lines[start:i]
        window.append(highlight(line) if highlight else line)
        window.extend(lines[i + 1 : end + 1])
        matches.append(Match(line_number=i + 1, text="\n".join(window)))
    return matches


def decode_content(file: FileRecord) -> str:
    """Decode a file's base64 content. Empty content decodes to ``""``."""
    data = base64.b64decode(file.content)
    return data.decode("utf-8", errors="replace")


def search_projects(
    projects: list[ProjectRecord],
    pattern: str,
    context: int = 1,
    highlight: Callable[[str], str] | None = None,
) -> Iterator[SearchHit]:
    """Yield a hit for every match in every file of *projects*.

    Files whose content is not valid base64 are logged and skipped.
    """
    regex = re.compile(pattern)
    for project in projects:
        logger.debug("checking project %s", project.name)
        for file in project.files:
            if not file.content:
                continue
            try:
                text = decode_content(file)
            except (binascii.Error, ValueError) as exc:
                logger.warning(
                    "failed to decode content of %s in %s: %s", file.path, project.name, exc
                )
                continue
            for match in find_expression(regex, text, context, highlight):
                yield SearchHit(project=project.name, path=file.path, match=match)
