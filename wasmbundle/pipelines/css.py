"""CSS asset pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from bs4 import BeautifulSoup

from wasmbundle.pipelines.assets import (
    ATTR_HREF,
    AssetFile,
    BuildConfig,
    LinkAttrs,
    href_to_path,
    strip_prefix,
    trunk_id_selector,
)

log = logging.getLogger(__name__)


class Css:
    """Pipeline copying (and optionally hashing) a stylesheet."""

    TYPE_CSS = "css"

    def __init__(self, cfg: BuildConfig, html_dir: Path, attrs: LinkAttrs, id: int) -> None:
        href = attrs.get(ATTR_HREF)
        if href is None:
            raise ValueError(
                'required attr `href` missing for <link data-trunk rel="css" .../> element'
            )
        self.id = id
        self.cfg = cfg
        self.asset = AssetFile(html_dir, href_to_path(href))

    async def run(self) -> CssOutput:
        """Copy the stylesheet into the staging dir."""
        rel_path = strip_prefix(self.asset.path)
        log.info("copying & hashing css %s", rel_path)
        file = await self.asset.copy(self.cfg.staging_dist, self.cfg.filehash)
        log.info("finished copying & hashing css %s", rel_path)
        return CssOutput(cfg=self.cfg, id=self.id, file=file)


@dataclass
class CssOutput:
    """Result of a CSS pipeline."""

    cfg: BuildConfig
    id: int
    file: str

    async def finalize(self, dom: BeautifulSoup) -> None:
        """Replace the source link with a stylesheet link to the output file."""
        html = f'<link rel="stylesheet" href="{self.cfg.public_url}{self.file}"/>'
        for node in dom.select(trunk_id_selector(self.id)):
            node.replace_with(BeautifulSoup(html, "html.parser"))