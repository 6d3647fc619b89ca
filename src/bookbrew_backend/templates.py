"""
LaTeX template handling: descriptor parsing, value substitution and lookup.

Templates are plain ``.tex`` files following a few conventions:

- Header comments such as ``% Title: Novel A5`` describe the template
- ``\\newif\\ifdropcaps \\dropcapstrue`` declares a boolean option and its default
- ``{{titre}}`` marks a variable filled from the build's metadata

Everything here except ``TemplateLibrary`` is a pure function of its inputs.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from .models import BuildKind, TemplateDescriptor, TemplateOption
from .utils import safe_template_name

logger = logging.getLogger(__name__)

HEADER_PATTERN = re.compile(r"^%\s*([a-zA-Z]+):\s*(.+)$", re.MULTILINE)
NEWIF_PATTERN = re.compile(r"\\newif\\if(\w+)(?:\s*\\\1(true|false)\b)?")
VARIABLE_PATTERN = re.compile(r"\{\{(\w+)\}\}")
FRONT_MATTER_PATTERN = re.compile(r"^---\s*\n(.*?)\n---\s*\n", re.DOTALL)
FILENAME_FORBIDDEN = re.compile(r'[<>:"/\\|?*]')

DESCRIPTOR_FIELDS = ("title", "description", "version", "author")

METADATA_DEFAULTS: Dict[str, str] = {
    "titre": "Untitled document",
    "auteur": "Anonymous",
    "edition": "BookBrew Edition",
    "spineThickness": "2mm",
    "imagecouv": "",
}

LATEX_ESCAPES = {
    "\\": r"\textbackslash{}",
    "$": r"\$",
    "%": r"\%",
    "&": r"\&",
    "_": r"\_",
    "{": r"\{",
    "}": r"\}",
    "~": r"\textasciitilde{}",
    "^": r"\textasciicircum{}",
    "#": r"\#",
}
_LATEX_ESCAPE_PATTERN = re.compile("|".join(re.escape(char) for char in LATEX_ESCAPES))

TEMPLATE_CATEGORIES = ("layout", "cover", "impose")


class TemplateNotFound(FileNotFoundError):
    pass


def parse_template_descriptor(data: bytes | str) -> TemplateDescriptor:
    """
    Extract the descriptive header, boolean options and variables of a template.

    Args:
        data: Raw ``.tex`` content

    Returns:
        TemplateDescriptor; fields that are absent stay empty

    Example:
        >>> descriptor = parse_template_descriptor(b"% Title: Novel\\n\\\\newif\\\\ifcolor \\\\colortrue\\n{{titre}}")
        >>> descriptor.title, descriptor.booleans[0].default, descriptor.variables[0].name
        ('Novel', True, 'titre')
    """
    text = data.decode("utf-8", errors="replace") if isinstance(data, bytes) else data

    header: Dict[str, str] = {}
    for key, value in HEADER_PATTERN.findall(text):
        key = key.lower()
        if key in DESCRIPTOR_FIELDS and key not in header:
            header[key] = value.strip()

    booleans: Dict[str, TemplateOption] = {}
    for name, default in NEWIF_PATTERN.findall(text):
        if name not in booleans:
            booleans[name] = TemplateOption(name=name, type="boolean", default=default == "true")

    variables: Dict[str, TemplateOption] = {}
    for name in VARIABLE_PATTERN.findall(text):
        if name not in variables:
            variables[name] = TemplateOption(name=name, type="image" if "image" in name.lower() else "text")

    return TemplateDescriptor(
        **header,
        booleans=list(booleans.values()),
        variables=list(variables.values()),
    )


def escape_latex(value: str) -> str:
    return _LATEX_ESCAPE_PATTERN.sub(lambda match: LATEX_ESCAPES[match.group(0)], value)


def clean_metadata(metadata: Mapping[str, str] | None) -> Dict[str, str]:
    """
    Keep the known metadata fields, fill defaults and escape LaTeX specials.

    Image fields are file names and are passed through untouched.
    """
    metadata = metadata or {}
    cleaned: Dict[str, str] = {}
    for name, default in METADATA_DEFAULTS.items():
        if name not in metadata:
            cleaned[name] = default
        elif "image" in name.lower():
            cleaned[name] = str(metadata[name])
        else:
            cleaned[name] = escape_latex(str(metadata[name]))
    return cleaned


def apply_template_values(tex: str, metadata: Mapping[str, str], boolean_options: Mapping[str, bool]) -> str:
    """Substitute ``{{variables}}`` and rewrite ``\\NAMEtrue``/``\\NAMEfalse`` switches."""
    for key, value in metadata.items():
        tex = tex.replace("{{" + key + "}}", value)
    for option, enabled in boolean_options.items():
        switch = "\\" + option + ("true" if enabled else "false")
        tex = re.sub(r"\\" + re.escape(option) + r"(true|false)\b", lambda _match: switch, tex)
    return tex


def extract_markdown_metadata(content: str) -> Dict[str, object]:
    """Read title/author/date/description/tags from YAML front matter, falling back to the first heading."""
    metadata: Dict[str, object] = {"title": "", "author": "", "date": "", "description": "", "tags": []}
    aliases = {"titre": "title", "auteur": "author", "desc": "description"}

    front_matter = FRONT_MATTER_PATTERN.match(content)
    if front_matter:
        for line in front_matter.group(1).splitlines():
            line = line.strip()
            if not line or ":" not in line:
                continue
            key, value = line.split(":", 1)
            key = aliases.get(key.strip().lower(), key.strip().lower())
            value = value.strip().strip("\"'")
            if key == "tags":
                metadata["tags"] = [tag.strip() for tag in value.strip("[]").split(",") if tag.strip()]
            elif key in metadata:
                metadata[key] = value

    if not metadata["title"]:
        for pattern in (r"^#\s+(.+)$", r"^##\s+(.+)$"):
            heading = re.search(pattern, content, re.MULTILINE)
            if heading:
                metadata["title"] = heading.group(1).strip()
                break
    return metadata


def generate_document_filename(metadata: Mapping[str, object], kind: BuildKind, now: datetime) -> str:
    """
    Name a finished PDF after its title, build kind and creation time.

    Example:
        >>> generate_document_filename({"titre": "Mon Livre"}, BuildKind.COMPILE_COVER, datetime(2024, 5, 1, 9, 30))
        'cover_Mon_Livre-01052024-093000.pdf'
    """
    title = str(metadata.get("title") or metadata.get("titre") or "")
    if title:
        stem = re.sub(r"\s+", "_", FILENAME_FORBIDDEN.sub("", title))[:30]
    else:
        stem = "untitled"
    prefix = {BuildKind.COMPILE_COVER: "cover_", BuildKind.IMPOSE: "impose_"}.get(kind, "")
    return f"{prefix}{stem}-{now:%d%m%Y}-{now:%H%M%S}.pdf"


def _matches_loosely(filename: str, base_name: str) -> bool:
    lowered = filename.lower()
    if base_name.lower() in lowered:
        return True
    parts = [part for part in base_name.lower().split("-") if part]
    return bool(parts) and all(part in lowered for part in parts)


def find_template_variant(directory: Path, base_name: str, category: str) -> Optional[Path]:
    """
    Locate a template file, tolerating the naming variants users upload.

    Tries ``<name>.tex`` first, then ``<name>-layout.tex`` for layouts, then
    any ``.tex`` whose name contains the requested one (covers also match
    when every dash-separated part of the name appears).
    """
    base_name = safe_template_name(base_name)
    if not base_name or not directory.is_dir():
        return None

    direct = directory / f"{base_name}.tex"
    if direct.is_file():
        return direct

    if category == "layout" and "-layout" not in base_name:
        suffixed = directory / f"{base_name}-layout.tex"
        if suffixed.is_file():
            return suffixed

    for candidate in sorted(directory.glob("*.tex")):
        if category == "cover":
            if _matches_loosely(candidate.name, base_name):
                return candidate
        elif base_name.lower() in candidate.name.lower():
            return candidate
    return None


class TemplateLibrary:
    """
    Resolves template names to files on disk.

    System templates live in ``<typeset_dir>/<category>/``; user templates in
    ``<user_templates_dir>/<user_id>/<category>/``.
    """

    def __init__(self, typeset_dir: Path, user_templates_dir: Path) -> None:
        self.typeset_dir = Path(typeset_dir)
        self.user_templates_dir = Path(user_templates_dir)

    def resolve(self, category: str, name: str, user_id: Optional[str] = None, user_template: bool = False) -> Path:
        if category not in TEMPLATE_CATEGORIES:
            raise ValueError(f"Unknown template category: {category}")

        if user_template and user_id:
            user_dir = self.user_templates_dir / safe_template_name(user_id) / category
            found = find_template_variant(user_dir, name, category)
            if found is None:
                raise TemplateNotFound(f"User {category} template not found: {name}")
            return found

        found = find_template_variant(self.typeset_dir / category, name, category)
        if found is None:
            raise TemplateNotFound(f"{category.capitalize()} template not found: {name}")
        logger.debug(f"Resolved {category} template {name!r} to {found}")
        return found

    def font_directories(self, category: str, user_id: Optional[str] = None) -> List[Path]:
        candidates = [self.typeset_dir / category / "fonts"]
        if user_id:
            candidates.append(self.user_templates_dir / safe_template_name(user_id) / "fonts")
        return [path for path in candidates if path.is_dir()]
