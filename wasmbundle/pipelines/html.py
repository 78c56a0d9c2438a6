"""Source HTML pipeline: spawn asset pipelines and assemble the output index.html."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Union

from bs4 import BeautifulSoup

from wasmbundle.pipelines.assets import ATTR_REL, TRUNK_ID, BuildConfig, LinkAttrs
from wasmbundle.pipelines.copy_dir import CopyDir
from wasmbundle.pipelines.copy_file import CopyFile
from wasmbundle.pipelines.css import Css
from wasmbundle.pipelines.icon import Icon
from wasmbundle.pipelines.inline import Inline
from wasmbundle.pipelines.rust import RustApp, default_rust_app, rust_app_from_attrs
from wasmbundle.pipelines.sass import Sass

log = logging.getLogger(__name__)

PUBLIC_URL_MARKER_ATTR = "data-trunk-public-url"
RELOAD_SCRIPT = """(function () {
    var protocol = window.location.protocol === "https:" ? "wss:" : "ws:";
    var url = protocol + "//" + window.location.host + "/_trunk/ws";
    function connect() {
        var ws = new WebSocket(url);
        ws.onmessage = function (ev) {
            var msg = JSON.parse(ev.data);
            if (msg && msg.reload) {
                window.location.reload();
            }
        };
        ws.onclose = function () {
            setTimeout(connect, 5000);
        };
    }
    connect();
})();"""

_RUST_MAIN_SELECTOR = (
    'link[data-trunk][rel="rust"][data-type="main"], '
    'link[data-trunk][rel="rust"]:not([data-type])'
)

TrunkLink = Union[Css, Sass, Icon, Inline, CopyFile, CopyDir, RustApp]


async def link_from_html(
    cfg: BuildConfig,
    html_dir: Path,
    ignore_chan: asyncio.Queue[Path] | None,
    attrs: LinkAttrs,
    id: int,
) -> TrunkLink:
    """Build the asset pipeline named by the ``rel`` attribute of a link element."""
    rel = attrs.get(ATTR_REL)
    if rel is None:
        raise ValueError(
            "all <link data-trunk .../> elements must have a `rel` attribute indicating "
            "the asset type"
        )
    if rel in (Sass.TYPE_SASS, Sass.TYPE_SCSS):
        return Sass(cfg, html_dir, attrs, id)
    if rel == Icon.TYPE_ICON:
        return Icon(cfg, html_dir, attrs, id)
    if rel == Inline.TYPE_INLINE:
        return Inline(html_dir, attrs, id)
    if rel == Css.TYPE_CSS:
        return Css(cfg, html_dir, attrs, id)
    if rel == CopyFile.TYPE_COPY_FILE:
        return CopyFile(cfg, html_dir, attrs, id)
    if rel == CopyDir.TYPE_COPY_DIR:
        return CopyDir(cfg, html_dir, attrs, id)
    if rel == RustApp.TYPE_RUST_APP:
        return await rust_app_from_attrs(cfg, html_dir, ignore_chan, attrs, id)
    raise ValueError(
        f'unknown <link data-trunk .../> attr value `rel="{rel}"`; please ensure the value '
        "is lowercase and is a supported asset type"
    )


def _attr_text(value: Any) -> str:
    if isinstance(value, list):
        return " ".join(value)
    return str(value)


class HtmlPipeline:
    """Processes the source HTML and the asset pipelines it declares."""

    def __init__(self, cfg: BuildConfig, ignore_chan: asyncio.Queue[Path] | None = None) -> None:
        try:
            target = Path(cfg.target).resolve(strict=True)
        except OSError as err:
            raise FileNotFoundError(
                "failed to get canonical path of target HTML file"
            ) from err
        self.cfg = cfg
        self.target_html_path = target
        self.target_html_dir = target.parent
        self.ignore_chan = ignore_chan

    async def run(self) -> None:
        """Run all asset pipelines and write the finalized index.html to the staging dir."""
        log.info("spawning asset pipelines")
        raw_html = await asyncio.to_thread(self.target_html_path.read_text, encoding="utf-8")
        dom = BeautifulSoup(raw_html, "html.parser", multi_valued_attributes=None)

        assets: list[TrunkLink] = []
        for id, link in enumerate(dom.select("link[data-trunk]")):
            link[TRUNK_ID] = str(id)
            attrs = {name: _attr_text(value) for name, value in link.attrs.items()}
            assets.append(
                await link_from_html(
                    self.cfg, self.target_html_dir, self.ignore_chan, attrs, id
                )
            )

        rust_app_nodes = len(dom.select(_RUST_MAIN_SELECTOR))
        if rust_app_nodes > 1:
            raise ValueError(
                'only one <link data-trunk rel="rust" data-type="main" .../> may be specified'
            )
        if rust_app_nodes == 0:
            assets.append(
                await default_rust_app(self.cfg, self.target_html_dir, self.ignore_chan)
            )

        await self._finalize_asset_pipelines(dom, assets)
        self.finalize_html(dom)

        out_path = Path(self.cfg.staging_dist) / "index.html"
        try:
            await asyncio.to_thread(out_path.write_text, str(dom), encoding="utf-8")
        except OSError as err:
            raise OSError("error writing finalized HTML output") from err

    async def _finalize_asset_pipelines(
        self, dom: BeautifulSoup, assets: list[TrunkLink]
    ) -> None:
        tasks = [asyncio.create_task(asset.run()) for asset in assets]
        try:
            for finished in asyncio.as_completed(tasks):
                output = await finished
                await output.finalize(dom)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    def finalize_html(self, dom: BeautifulSoup) -> None:
        """Write the public URL into marked base elements and inject the autoreload script."""
        for base in dom.select(f"html head base[{PUBLIC_URL_MARKER_ATTR}]"):
            del base[PUBLIC_URL_MARKER_ATTR]
            base["href"] = self.cfg.public_url

        if self.cfg.inject_autoloader:
            for body in dom.select("body"):
                script = dom.new_tag("script")
                script.string = RELOAD_SCRIPT
                body.append(script)