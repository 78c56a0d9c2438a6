"""Sass/Scss asset pipeline."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

from bs4 import BeautifulSoup

from wasmbundle import tools
from wasmbundle.pipelines.assets import (
    ATTR_HREF,
    ATTR_INLINE,
    AssetFile,
    BuildConfig,
    LinkAttrs,
    content_hash,
    href_to_path,
    run_command,
    strip_prefix,
    trunk_id_selector,
)

log = logging.getLogger(__name__)


class Sass:
    """Pipeline compiling a sass/scss file to CSS."""

    TYPE_SASS = "sass"
    TYPE_SCSS = "scss"

    def __init__(self, cfg: BuildConfig, html_dir: Path, attrs: LinkAttrs, id: int) -> None:
        href = attrs.get(ATTR_HREF)
        if href is None:
            raise ValueError(
                'required attr `href` missing for <link data-trunk rel="sass|scss" .../> element'
            )
        self.id = id
        self.cfg = cfg
        self.asset = AssetFile(html_dir, href_to_path(href))
        self.use_inline = attrs.get(ATTR_INLINE) is not None

    async def run(self) -> SassOutput:
        """Compile the stylesheet, then either keep it for inlining or write it out."""
        sass = await tools.get(tools.Application.SASS, self.cfg.tools.sass)

        style = "compressed" if self.cfg.release else "expanded"
        staging = Path(self.cfg.staging_dist)
        file_name = f"{self.asset.file_stem}.css"
        file_path = staging / file_name
        args = ["--no-source-map", "-s", style, str(self.asset.path), str(file_path)]

        rel_path = strip_prefix(self.asset.path)
        log.info("compiling sass/scss %s", rel_path)
        await run_command(tools.Application.SASS.binary_name(), sass, args)

        data = await asyncio.to_thread(file_path.read_bytes)
        await asyncio.to_thread(file_path.unlink)
        css = data.decode("utf-8")

        if self.use_inline:
            log.info("finished compiling sass/scss %s", rel_path)
            return SassOutput(cfg=self.cfg, id=self.id, css_ref=css, inline=True)

        if self.cfg.filehash:
            file_name = f"{self.asset.file_stem}-{content_hash(data):x}.css"
        out_path = staging / file_name
        try:
            await asyncio.to_thread(out_path.write_bytes, data)
        except OSError as err:
            raise OSError("error writing SASS pipeline output") from err

        log.info("finished compiling sass/scss %s", rel_path)
        return SassOutput(cfg=self.cfg, id=self.id, css_ref=file_name, inline=False)


@dataclass
class SassOutput:
    """Result of a sass pipeline: inline CSS text, or the name of the written CSS file."""

    cfg: BuildConfig
    id: int
    css_ref: str
    inline: bool = False

    async def finalize(self, dom: BeautifulSoup) -> None:
        """Replace the source link with a style element or a stylesheet link."""
        if self.inline:
            html = f'<style type="text/css">{self.css_ref}</style>'
        else:
            html = f'<link rel="stylesheet" href="{self.cfg.public_url}{self.css_ref}"/>'
        for node in dom.select(trunk_id_selector(self.id)):
            node.replace_with(BeautifulSoup(html, "html.parser"))