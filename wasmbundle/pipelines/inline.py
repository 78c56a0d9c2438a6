"""Inline asset pipeline: paste a file's contents into the output HTML."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from bs4 import BeautifulSoup

from wasmbundle.pipelines.assets import (
    ATTR_HREF,
    ATTR_TYPE,
    AssetFile,
    LinkAttrs,
    href_to_path,
    strip_prefix,
    trunk_id_selector,
)

log = logging.getLogger(__name__)


class ContentType(Enum):
    """How inlined content is inserted into the HTML."""

    HTML = "html"
    CSS = "css"
    JS = "js"


def parse_content_type(value: str) -> ContentType:
    """Parse a content type name; raises ValueError for unsupported values."""
    try:
        return ContentType(value)
    except ValueError:
        raise ValueError(
            f'unknown `type="{value}"` value for <link data-trunk rel="inline" .../> attr; '
            "please ensure the value is lowercase and is a supported content type"
        ) from None


def content_type_from(attr: str | None, ext: str | None) -> ContentType:
    """Content type from the ``type`` attribute, else from the file extension."""
    if attr is not None:
        return parse_content_type(attr)
    if ext is not None:
        return parse_content_type(ext)
    raise ValueError(
        'unknown type value for <link data-trunk rel="inline" .../> attr; '
        "please ensure the value is lowercase and is a supported content type"
    )


class Inline:
    """Pipeline reading a file to be inlined into the HTML."""

    TYPE_INLINE = "inline"

    def __init__(self, html_dir: Path, attrs: LinkAttrs, id: int) -> None:
        href = attrs.get(ATTR_HREF)
        if href is None:
            raise ValueError(
                'required attr `href` missing for <link data-trunk rel="inline" .../> element'
            )
        self.id = id
        self.asset = AssetFile(html_dir, href_to_path(href))
        self.content_type = content_type_from(attrs.get(ATTR_TYPE), self.asset.ext)

    async def run(self) -> InlineOutput:
        """Read the file's contents."""
        rel_path = strip_prefix(self.asset.path)
        log.info("reading file content %s", rel_path)
        content = await self.asset.read_to_string()
        log.info("finished reading file content %s", rel_path)
        return InlineOutput(id=self.id, content=content, content_type=self.content_type)


@dataclass
class InlineOutput:
    """Result of an inline pipeline."""

    id: int
    content: str
    content_type: ContentType

    async def finalize(self, dom: BeautifulSoup) -> None:
        """Replace the source link element with the inlined content."""
        if self.content_type is ContentType.CSS:
            html = f'<style type="text/css">{self.content}</style>'
        elif self.content_type is ContentType.JS:
            html = f"<script>{self.content}</script>"
        else:
            html = self.content
        for node in dom.select(trunk_id_selector(self.id)):
            node.replace_with(BeautifulSoup(html, "html.parser"))