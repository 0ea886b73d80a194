"""Deterministic trace ids and destination path templates."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Mapping, Tuple

SHADOW_SUFFIX = ".imgsync_shadow_v1"

_ACTION = re.compile(r"\{\{(.*?)\}\}", re.DOTALL)
_FIELD = re.compile(r"\.([A-Za-z_][A-Za-z0-9_]*)")


def trace_id(source_table: str, pk: str) -> str:
    """Return ``"<source_table>-<pk>"``; the same row always yields the same id."""
    return f"{source_table}-{pk}"


def _parse(pattern: str) -> List[Tuple[bool, str]]:
    """Split a pattern into ``(is_field, text)`` pieces."""
    pieces: List[Tuple[bool, str]] = []
    pos = 0
    for match in _ACTION.finditer(pattern):
        pieces.append((False, pattern[pos:match.start()]))
        inner = match.group(1).strip()
        field = _FIELD.fullmatch(inner)
        if field is None:
            raise ValueError(f"parse pattern: unsupported action {{{{{inner}}}}}")
        pieces.append((True, field.group(1)))
        pos = match.end()
    tail = pattern[pos:]
    if "{{" in tail:
        raise ValueError("parse pattern: unclosed action")
    pieces.append((False, tail))
    return pieces


@dataclass(frozen=True)
class DstTemplate:
    """Renders a path from a row's columns using ``{{.column}}`` placeholders.

    With ``shadow`` set, SHADOW_SUFFIX is appended so output never collides
    with the production system's files.
    """

    pattern: str
    shadow: bool = False

    def render(self, fields: Mapping[str, str]) -> str:
        """Fill the pattern from ``fields``; a missing key raises ValueError."""
        if not self.pattern:
            raise ValueError("dst template: empty pattern")
        out = []
        for is_field, text in _parse(self.pattern):
            if not is_field:
                out.append(text)
                continue
            if text not in fields:
                raise ValueError(f'render: map has no entry for key "{text}"')
            out.append(str(fields[text]))
        rendered = "".join(out)
        if self.shadow:
            rendered += SHADOW_SUFFIX
        return rendered