"""Project-relative path normalization.

All file state is keyed by normalized paths: forward slashes, no leading
slash, no ``.`` or empty segments, ``..`` resolved. A path that climbs above
the project root normalizes to None.
"""


def normalize_path(path: str) -> str | None:
    """Normalize a project path.

    Args:
        path: A path as produced by a template, the model, or a client.

    Returns:
        The normalized root-relative path, ``""`` for the root itself, or
        None if the path escapes the project root.

    Examples:
        >>> normalize_path("/src//components/./Button.tsx")
        'src/components/Button.tsx'
        >>> normalize_path("src\\\\utils\\\\..\\\\index.ts")
        'src/index.ts'
        >>> normalize_path("../secrets.txt") is None
        True
    """
    segments: list[str] = []
    for part in path.replace("\\", "/").split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            if not segments:
                return None
            segments.pop()
            continue
        segments.append(part)
    return "/".join(segments)


def is_within_root(path: str) -> bool:
    return normalize_path(path) is not None


def parent_directory(path: str) -> str:
    """Return the parent of a normalized path (``""`` for top-level entries)."""
    head, _, _ = path.rpartition("/")
    return head


def path_segments(path: str) -> list[str]:
    return [segment for segment in path.split("/") if segment]


def ancestor_directories(path: str) -> list[str]:
    """Return every ancestor directory of a normalized path, outermost first.

    >>> ancestor_directories("src/features/index.ts")
    ['src', 'src/features']
    """
    segments = path_segments(path)
    return ["/".join(segments[:i]) for i in range(1, len(segments))]
