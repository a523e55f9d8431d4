"""Decide which repository paths are worth downloading."""

from __future__ import annotations

# Substrings that mark a path as not worth fetching. Matched anywhere in the
# path, so "foo.png/bar.go" is skipped as well.
AVOID_SUBSTRINGS: tuple[str, ...] = (
    # Version control internals / lockfiles
    ".git/",
    "package-lock.json",
    # Source maps and minified bundles
    ".js.map",
    ".css.map",
    ".min.",
    # Images
    ".png",
    ".jpeg",
    ".jpg",
    ".webp",
    ".ico",
    ".icc",
    ".image",
    # Documents / databases / executables
    ".pdf",
    ".db",
    ".exe",
)


def avoid_file(path: str) -> bool:
    """Return True if the content of *path* should not be downloaded.

    Paths without any ``.`` are treated as extensionless binaries.
    """
    if "." not in path:
        return True
    return any(marker in path for marker in AVOID_SUBSTRINGS)
