"""
Building the before/after pull request comment.
"""

from __future__ import annotations

import re

from dataclasses import dataclass
from typing import Iterable

from .pack import Entity

SAFE_FILENAME_REGEX = re.compile(r"[^a-zA-Z0-9._-]")
IMAGE_WIDTH = 200
HEADING = "### Minecraft Model Preview"


def to_safe_filename(name: str) -> str:
    return SAFE_FILENAME_REGEX.sub("_", name)

def image_name(identifier: str, side: str) -> str:
    """
    The file name an entity's image is stored under. Side is 'base' or 'head'.
    """
    return f"{to_safe_filename(identifier)}.{side}.png"


@dataclass(frozen=True)
class ImageRow:
    identifier: str
    before_url: str = ""
    after_url: str = ""

    @property
    def has_image(self) -> bool:
        return bool(self.before_url or self.after_url)


def build_rows(entities: Iterable[Entity], urls: dict[str, str]) -> list[ImageRow]:
    """
    One row per head entity, with the URLs of its base and head images.
    Entities with neither image are left out, and so are entities whose
    images were already claimed by an earlier row.
    """
    rows = []
    claimed = set()
    for entity in entities:
        safe_name = to_safe_filename(entity.identifier)
        if safe_name in claimed:
            continue
        claimed.add(safe_name)

        row = ImageRow(
            identifier = entity.identifier,
            before_url = urls.get(image_name(entity.identifier, "base"), ""),
            after_url = urls.get(image_name(entity.identifier, "head"), ""),
        )
        if row.has_image:
            rows.append(row)
    return rows


def _cell(url: str) -> str:
    if not url:
        return " "
    return f'<img src="{url}" width="{IMAGE_WIDTH}" />'

def build_comment_body(rows: Iterable[ImageRow]) -> str:
    lines = [
        HEADING,
        "",
        "| Entity | Before | After |",
        "|--------|--------|-------|",
    ]
    for row in rows:
        lines.append(f"| `{row.identifier}` | {_cell(row.before_url)} | {_cell(row.after_url)} |")
    return "\n".join(lines) + "\n"
