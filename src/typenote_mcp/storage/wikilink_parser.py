"""Wikilink parsing and rewriting.

Stateless helpers for the ``[[target]]`` and ``[[target|display]]``
syntax used in note bodies. A target is either ``type/filename`` or a bare
``filename`` (or title). Positions returned by :func:`parse_wikilinks` are
only valid for the exact string that was parsed.
"""
import re
from typing import Dict, List, Optional, Sequence, Set, Tuple

from typenote_mcp.models.schema import (
    LinkableText,
    LinkParseResult,
    LinkSuggestion,
    NoteLookup,
    Position,
    WikiLink,
)
from typenote_mcp.utils import slugify

WIKILINK_PATTERN = re.compile(r"\[\[([^\]|]+)(\|([^\]]+))?\]\]")
TYPE_FILENAME_PATTERN = re.compile(r"^([^/]+)/([^/]+)$")

# Titles shorter than this are never suggested as link text
MIN_LINKABLE_TITLE_LENGTH = 3


def parse_wikilinks(content: str) -> LinkParseResult:
    """Find every wikilink in ``content``.

    Args:
        content: Markdown text.

    Returns:
        The wikilinks in order of appearance, with their character spans,
        and the unchanged content.
    """
    wikilinks: List[WikiLink] = []
    for match in WIKILINK_PATTERN.finditer(content):
        target = match.group(1).strip()
        display = (match.group(3) or "").strip() or target
        note_type, filename = parse_target(target)
        wikilinks.append(
            WikiLink(
                target=target,
                display=display,
                type=note_type,
                filename=filename,
                raw=match.group(0),
                position=Position(start=match.start(), end=match.end()),
            )
        )
    return LinkParseResult(wikilinks=wikilinks, content=content)


def parse_target(target: str) -> Tuple[Optional[str], str]:
    """Split a target into ``(type, filename)``.

    ``"projects/alpha"`` gives ``("projects", "alpha")``; a bare target
    gives ``(None, target)``.
    """
    match = TYPE_FILENAME_PATTERN.match(target)
    if match:
        return match.group(1), match.group(2)
    return None, target


def validate_wikilink_format(text: str) -> bool:
    """Check that ``text`` is exactly one well-formed wikilink."""
    return WIKILINK_PATTERN.fullmatch(text.strip()) is not None


def create_wikilink(note_type: str, filename: str, display: Optional[str] = None) -> str:
    """Build a ``[[type/filename]]`` link, with a display text when given."""
    target = f"{note_type}/{filename}"
    if display:
        return f"[[{target}|{display}]]"
    return f"[[{target}]]"


def extract_targets(wikilinks: Sequence[WikiLink]) -> List[str]:
    """Unique targets in order of first appearance."""
    seen: Set[str] = set()
    targets: List[str] = []
    for link in wikilinks:
        if link.target not in seen:
            seen.add(link.target)
            targets.append(link.target)
    return targets


def replace_wikilinks(content: str, replacements: Dict[str, str]) -> str:
    """Replace whole wikilinks by target.

    Every wikilink whose target is a key of ``replacements`` is substituted
    by the mapped text. Spans are computed from ``content`` itself and
    applied from the end of the string backwards so earlier offsets stay
    valid.
    """
    if not replacements:
        return content
    links = sorted(
        parse_wikilinks(content).wikilinks,
        key=lambda link: link.position.start,
        reverse=True,
    )
    result = content
    for link in links:
        replacement = replacements.get(link.target)
        if replacement is None:
            continue
        result = (
            result[: link.position.start]
            + replacement
            + result[link.position.end:]
        )
    return result


def _is_inside_wikilink(spans: Sequence[Position], start: int, end: int) -> bool:
    return any(span.start <= start and end <= span.end for span in spans)


def find_linkable_text(
    content: str, notes: Sequence[NoteLookup]
) -> List[LinkableText]:
    """Find plain-text mentions of existing note titles.

    Titles are matched case-insensitively on word boundaries. Occurrences
    already inside a wikilink are skipped. Notes sharing a title (ignoring
    case) are grouped, and each occurrence carries one suggestion per note
    in the order the notes were given.
    """
    by_title: Dict[str, List[NoteLookup]] = {}
    for note in notes:
        by_title.setdefault(note.title.strip().lower(), []).append(note)

    spans = [link.position for link in parse_wikilinks(content).wikilinks]
    results: List[LinkableText] = []

    for title, candidates in by_title.items():
        if len(title) < MIN_LINKABLE_TITLE_LENGTH:
            continue
        pattern = re.compile(
            rf"(?<!\w){re.escape(title)}(?!\w)", re.IGNORECASE
        )
        for match in pattern.finditer(content):
            if _is_inside_wikilink(spans, match.start(), match.end()):
                continue
            suggestions = [
                LinkSuggestion(
                    target=f"{note.type}/{note.filename}",
                    display=note.title,
                    type=note.type,
                    filename=note.filename,
                    title=note.title,
                    relevance=1.0,
                )
                for note in candidates
            ]
            results.append(
                LinkableText(
                    text=match.group(0),
                    position=Position(start=match.start(), end=match.end()),
                    suggestions=suggestions,
                )
            )
    return results


def generate_filename(title: str) -> str:
    """Filename stem for a new note with this title."""
    return slugify(title)


def normalize_target(target: str) -> str:
    """Canonical form of a link target for comparisons."""
    note_type, filename = parse_target(target.strip())
    if note_type is not None:
        return f"{note_type.strip()}/{filename.strip()}"
    return filename.strip()


def extract_links_for_frontmatter(content: str) -> List[str]:
    """Normalized unique link targets, as stored in a ``links`` list."""
    targets: List[str] = []
    for link in parse_wikilinks(content).wikilinks:
        target = normalize_target(link.target)
        if target not in targets:
            targets.append(target)
    return targets


def contains_link_to_target(content: str, target: str) -> bool:
    """Whether ``content`` already links to ``target``."""
    wanted = normalize_target(target)
    return any(
        normalize_target(link.target) == wanted
        for link in parse_wikilinks(content).wikilinks
    )


def get_referenced_types(content: str) -> List[str]:
    """Note types named by ``type/filename`` targets, first appearance first."""
    seen: List[str] = []
    for link in parse_wikilinks(content).wikilinks:
        if link.type and link.type not in seen:
            seen.append(link.type)
    return seen


def count_wikilinks(content: str) -> int:
    return len(parse_wikilinks(content).wikilinks)


def remove_wikilinks(content: str) -> str:
    """Replace every wikilink by its display text."""
    def _display(match: "re.Match[str]") -> str:
        target = match.group(1).strip()
        return (match.group(3) or "").strip() or target

    return WIKILINK_PATTERN.sub(_display, content)
