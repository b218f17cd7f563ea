"""
Input validation functions for gistmarks.

Validates category/bundle names and bookmark fields before they enter the
tree, so that everything in the tree can be written to Markdown and read
back unchanged.
"""


# ---------------------------------------------------------------------------
# Error message formatting helpers
# ---------------------------------------------------------------------------


def format_validation_error(field_name: str, reason: str) -> str:
    """
    Generate consistent error message for validation failures.

    Args:
        field_name: Human-readable field name (e.g., "Category name")
        reason: Description of validation failure (e.g., "cannot be empty")

    Returns:
        Formatted error message string
    """
    return f"{field_name} {reason}"


# Markers the Markdown form puts in headings; a name carrying one would
# not read back unchanged.
CATEGORY_EMOJI = "📂"
BUNDLE_EMOJI = "🧳"
EMPTY_COLLECTION_NAME = "📚 BookMarkDown"


def _has_line_break(value: str) -> bool:
    return "\n" in value or "\r" in value


def validate_name(name: str, field_name: str = "Name") -> tuple[bool, str]:
    """
    Validate a category or bundle name.

    Returns:
        Tuple of (is_valid, error_message).
        Returns (True, "") if valid, (False, reason) if invalid.

    Validation rules:
        - Cannot be empty or whitespace-only
        - Cannot contain line breaks
        - Cannot start with '#' (would change the heading level)
        - Cannot start with a heading emoji or be the empty-collection title
    """
    if not name or not name.strip():
        return (False, format_validation_error(field_name, "cannot be empty"))

    if _has_line_break(name):
        return (
            False,
            format_validation_error(field_name, "cannot contain line breaks"),
        )

    if name.strip().startswith("#"):
        return (
            False,
            format_validation_error(field_name, "cannot start with '#'"),
        )

    if name.strip().startswith((CATEGORY_EMOJI, BUNDLE_EMOJI)):
        return (
            False,
            format_validation_error(field_name, "cannot start with a heading emoji"),
        )

    if name.strip() == EMPTY_COLLECTION_NAME:
        return (False, format_validation_error(field_name, "is reserved"))

    return (True, "")


def validate_title(title: str) -> tuple[bool, str]:
    """
    Validate a bookmark title.

    Validation rules:
        - Cannot be empty or whitespace-only
        - Cannot contain line breaks or ']'
    """
    if not title or not title.strip():
        return (False, format_validation_error("Title", "cannot be empty"))

    if _has_line_break(title):
        return (
            False,
            format_validation_error("Title", "cannot contain line breaks"),
        )

    if "]" in title:
        return (False, format_validation_error("Title", "cannot contain ']'"))

    return (True, "")


def validate_url(url: str) -> tuple[bool, str]:
    """
    Validate a bookmark URL.

    Validation rules:
        - Cannot be empty
        - Cannot contain whitespace or ')'
    """
    if not url or not url.strip():
        return (False, format_validation_error("URL", "cannot be empty"))

    if any(ch.isspace() for ch in url.strip()):
        return (
            False,
            format_validation_error("URL", "cannot contain whitespace"),
        )

    if ")" in url:
        return (False, format_validation_error("URL", "cannot contain ')'"))

    return (True, "")


def validate_notes(notes: str | None) -> tuple[bool, str]:
    """Notes are optional but must fit on one line."""
    if notes is not None and _has_line_break(notes):
        return (
            False,
            format_validation_error("Notes", "cannot contain line breaks"),
        )
    return (True, "")


def validate_tags(tags) -> tuple[bool, str]:
    """Tags cannot contain commas or line breaks (they are comma-joined)."""
    for tag in tags or ():
        if "," in tag or _has_line_break(tag):
            return (
                False,
                format_validation_error(
                    "Tag", f"'{tag}' cannot contain commas or line breaks"
                ),
            )
    return (True, "")
