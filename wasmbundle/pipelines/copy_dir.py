"""Copy-dir asset pipeline."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from bs4 import BeautifulSoup

from wasmbundle.pipelines.assets import (
    ATTR_HREF,
    BuildConfig,
    LinkAttrs,
    copy_dir_recursive,
    href_to_path,
    strip_prefix,
    trunk_id_selector,
)

log = logging.getLogger(__name__)


class CopyDir:
    """Pipeline copying a whole directory into the staging dir."""

    TYPE_COPY_DIR = "copy-dir"

    def __init__(self, cfg: BuildConfig, html_dir: Path, attrs: LinkAttrs, id: int) -> None:
        href = attrs.get(ATTR_HREF)
        if href is None:
            raise ValueError(
                'required attr `href` missing for <link data-trunk rel="copydir" .../> element'
            )
        path = href_to_path(href)
        if not path.is_absolute():
            path = Path(html_dir) / path
        self.id = id
        self.cfg = cfg
        self.path = path

    async def run(self) -> CopyDirOutput:
        """Copy the directory below the staging dir, keeping its name."""
        rel_path = strip_prefix(self.path)
        log.info("copying directory %s", rel_path)
        try:
            canonical = self.path.resolve(strict=True)
        except OSError as err:
            raise FileNotFoundError(
                f"error taking canonical path of directory {self.path}"
            ) from err
        if not canonical.name:
            raise ValueError(f"could not get directory name of dir {canonical}")
        await copy_dir_recursive(canonical, Path(self.cfg.staging_dist) / canonical.name)
        log.info("finished copying directory %s", rel_path)
        return CopyDirOutput(id=self.id)


@dataclass
class CopyDirOutput:
    """Result of a copy-dir pipeline."""

    id: int

    async def finalize(self, dom: BeautifulSoup) -> None:
        """Remove the source link element from the document."""
        for node in dom.select(trunk_id_selector(self.id)):
            node.decompose()