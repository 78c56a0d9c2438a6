"""Copy-file asset pipeline."""

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


class CopyFile:
    """Pipeline copying a single file into the staging dir unchanged."""

    TYPE_COPY_FILE = "copy-file"

    def __init__(self, cfg: BuildConfig, html_dir: Path, attrs: LinkAttrs, id: int) -> None:
        href = attrs.get(ATTR_HREF)
        if href is None:
            raise ValueError(
                'required attr `href` missing for <link data-trunk rel="copyfile" .../> element'
            )
        self.id = id
        self.cfg = cfg
        self.asset = AssetFile(html_dir, href_to_path(href))

    async def run(self) -> CopyFileOutput:
        """Copy the file into the staging dir."""
        rel_path = strip_prefix(self.asset.path)
        log.info("copying file %s", rel_path)
        await self.asset.copy(self.cfg.staging_dist, False)
        log.info("finished copying file %s", rel_path)
        return CopyFileOutput(id=self.id)


@dataclass
class CopyFileOutput:
    """Result of a copy-file pipeline."""

    id: int

    async def finalize(self, dom: BeautifulSoup) -> None:
        """Remove the source link element from the document."""
        for node in dom.select(trunk_id_selector(self.id)):
            node.decompose()