"""
Markdown clean-up applied before Pandoc sees a document.

Notes written in Obsidian reference images as wiki links (``![[cover.png]]``)
and the web editor inserts uploads as absolute URLs. Both are rewritten to
plain Markdown images under ``images/`` so the workspace can hold local
copies. Inline footnotes (``^[text]``) are turned into numbered Pandoc
footnotes for the ``obsidian_export`` conversion.
"""

from __future__ import annotations

import re
from pathlib import PurePosixPath
from typing import Dict, Iterable, List, Mapping
from urllib.parse import unquote, urlparse

IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif", ".svg")

EMBED_PATTERN = re.compile(r"!\\?\[\[(?P<target>[^\]|#]+)(?:#[^\]|]+)?(?:\|(?P<alt>[^\]]+))?\]\]")
WIKI_LINK_PATTERN = re.compile(r"(?<!!)\[\[(?P<target>[^\]|#]+)(?:#[^\]|]+)?\]\]")
UPLOAD_URL_PATTERN = re.compile(r"!\[(?P<alt>[^\]]*)\]\((?P<url>[^)\s]*/uploads/[^)\s]+)\)", re.IGNORECASE)
SERVE_URL_PATTERN = re.compile(r"!\[(?P<alt>[^\]]*)\]\((?P<url>[^)\s]*serve-image\.php/[^)\s]+)\)", re.IGNORECASE)
LOCAL_IMAGE_PATTERN = re.compile(r"!\[[^\]]*\]\(images/(?P<name>[^)]+)\)")
INLINE_FOOTNOTE_PATTERN = re.compile(r"\^\[([^\]]+)\]")
# Uploads are stored as <user>_<token>_<original name>.
UPLOAD_PREFIX_PATTERN = re.compile(r"^[a-z0-9_]+_[a-z0-9]+_")

FOOTNOTES_MARKER = "<!-- Footnotes -->"


def image_file_name(reference: str) -> str:
    """
    Reduce an image reference to a bare file name.

    Markdown escapes in names are undone and any directory part is dropped,
    so the result is always safe to join to a workspace path.

    Example:
        >>> image_file_name("attachments/my\\\\_cover.png")
        'my_cover.png'
    """
    name = reference.strip().replace("\\_", "_").replace("\\-", "-")
    return PurePosixPath(name.replace("\\", "/")).name


def _embed(match: re.Match) -> str:
    alt = (match.group("alt") or "").strip()
    return f"![{alt}](images/{image_file_name(match.group('target'))})"


def _wiki_link(match: re.Match) -> str:
    target = match.group("target").strip()
    if not target.lower().endswith(IMAGE_EXTENSIONS):
        return match.group(0)
    return f"![](images/{image_file_name(target)})"


def _upload_url(match: re.Match) -> str:
    path = urlparse(match.group("url")).path
    return f"![{match.group('alt')}](images/{image_file_name(unquote(path))})"


def normalize_markdown_images(content: str) -> str:
    """
    Point every image reference at the workspace ``images/`` directory.

    Handles Obsidian embeds (``![[file.png|alt]]``), bare wiki links to image
    files (``[[file.png]]``) and images served from the upload endpoints.
    Other links and images are left untouched.

    Example:
        >>> normalize_markdown_images("See ![[maps/island.png|The island]] and [[Chapter 2]]")
        'See ![The island](images/island.png) and [[Chapter 2]]'
    """
    content = EMBED_PATTERN.sub(_embed, content)
    content = WIKI_LINK_PATTERN.sub(_wiki_link, content)
    content = UPLOAD_URL_PATTERN.sub(_upload_url, content)
    return SERVE_URL_PATTERN.sub(_upload_url, content)


def referenced_images(content: str) -> List[str]:
    """File names under ``images/`` used by normalized Markdown, in order of first use."""
    names: List[str] = []
    for match in LOCAL_IMAGE_PATTERN.finditer(content):
        name = image_file_name(unquote(match.group("name")))
        if name and name not in names:
            names.append(name)
    return names


def metadata_images(metadata: Mapping[str, str]) -> List[str]:
    """File names of the image-like metadata fields (``imagecouv`` and friends)."""
    names: List[str] = []
    for key, value in metadata.items():
        lowered = key.lower()
        if ("image" in lowered or "couv" in lowered) and value and value.strip():
            name = image_file_name(value)
            if name and name not in names:
                names.append(name)
    return names


def strip_upload_prefix(filename: str) -> str:
    return UPLOAD_PREFIX_PATTERN.sub("", filename, count=1)


def match_uploads(names: Iterable[str], uploads: Iterable[str]) -> Dict[str, str]:
    """
    Map wanted image names to the uploaded files that hold them.

    An exact file name wins; otherwise an upload whose name matches once its
    ``<user>_<token>_`` prefix is removed is used.
    """
    uploads = list(uploads)
    by_original: Dict[str, str] = {}
    for upload in uploads:
        by_original.setdefault(strip_upload_prefix(upload), upload)
    found: Dict[str, str] = {}
    for name in names:
        if name in uploads:
            found[name] = name
        elif name in by_original:
            found[name] = by_original[name]
    return found


def unescape_exported_footnotes(content: str) -> str:
    """Undo the bracket escaping obsidian-export applies to inline footnotes."""
    return content.replace("^\\[", "^[").replace("\\]", "]")


def convert_inline_footnotes(content: str) -> str:
    """
    Turn ``^[note]`` inline footnotes into numbered reference footnotes.

    The definitions are appended at the end of the document after a marker
    comment. Content without inline footnotes is returned unchanged.

    Example:
        >>> print(convert_inline_footnotes("Text^[A note]."))
        Text[^1].
        <BLANKLINE>
        <!-- Footnotes -->
        [^1]: A note
        <BLANKLINE>
    """
    notes: List[str] = []

    def number(match: re.Match) -> str:
        notes.append(match.group(1).strip())
        return f"[^{len(notes)}]"

    converted = INLINE_FOOTNOTE_PATTERN.sub(number, content)
    if not notes:
        return content
    definitions = "".join(f"[^{index}]: {note}\n" for index, note in enumerate(notes, start=1))
    return f"{converted}\n\n{FOOTNOTES_MARKER}\n{definitions}"
