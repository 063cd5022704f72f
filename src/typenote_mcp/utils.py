"""Utility functions for the Typenote MCP server."""
import hashlib
import re

CONTENT_HASH_PREFIX = "sha256:"


def generate_content_hash(content: str) -> str:
    """Hash note content for change detection.

    Args:
        content: The note body.

    Returns:
        ``"sha256:"`` followed by the hex digest of the UTF-8 encoded content.
    """
    digest = hashlib.sha256(content.encode("utf-8")).hexdigest()
    return f"{CONTENT_HASH_PREFIX}{digest}"


def slugify(text: str) -> str:
    """Turn a title into a filename-safe slug.

    Lowercases, drops everything but ``a-z``, digits, whitespace and
    hyphens, turns whitespace runs into single hyphens and trims hyphens
    from both ends.

    Examples:
        "My Cool Note!" -> "my-cool-note"
        "  Design -- Review  " -> "design-review"
    """
    slug = text.lower()
    slug = re.sub(r"[^a-z0-9\s-]", "", slug)
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")


def title_from_filename(filename: str) -> str:
    """Derive a display title from a note filename.

    ``"project-kickoff.md"`` becomes ``"Project Kickoff"``.
    """
    stem = filename[:-3] if filename.endswith(".md") else filename
    words = re.split(r"[-_\s]+", stem)
    return " ".join(word.capitalize() for word in words if word)
