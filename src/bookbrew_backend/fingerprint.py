"""
Deterministic build fingerprints used as deduplication and cache keys.

The digest covers the build kind, the template selection and the raw
Markdown bytes. The template selection is serialized as canonical JSON
(sorted keys, no insignificant whitespace), so the insertion order of
``metadata`` or ``boolean_options`` never changes the result, while any change
to the content bytes does. ``requester_id`` is deliberately left out: two
callers asking for the same book share one render.
"""

from __future__ import annotations

import hashlib
import json

from .models import BuildRequest, TemplateSelection

FINGERPRINT_VERSION = b"bookbrew-fingerprint-v1"


def canonical_template(template: TemplateSelection) -> bytes:
    payload = template.model_dump(mode="json", by_alias=False)
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_fingerprint(request: BuildRequest) -> str:
    """
    Compute the SHA-256 fingerprint of a build request.

    Each section is length-prefixed so that bytes can never migrate between
    the template and the content and still collide.

    Args:
        request: The build request to identify

    Returns:
        64-character hex digest
    """
    digest = hashlib.sha256()
    digest.update(FINGERPRINT_VERSION)
    for part in (request.kind.value.encode("ascii"), canonical_template(request.template), request.source_content):
        digest.update(len(part).to_bytes(8, "big"))
        digest.update(part)
    return digest.hexdigest()
