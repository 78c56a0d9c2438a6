from pathlib import Path

import pytest
from bs4 import BeautifulSoup

from wasmbundle.pipelines.assets import BuildConfig, trunk_id_selector
from wasmbundle.pipelines.rust import (
    CargoMetadata,
    CargoPackage,
    RustAppOutput,
    RustAppType,
    WasmOptLevel,
    find_wasm_bindgen_version,
    parse_app_type,
    parse_wasm_opt_level,
    pattern_evaluate,
    rust_app_from_attrs,
)

HTML = (
    "<html><head></head><body>"
    '<link data-trunk rel="rust" data-trunk-id="0"/>'
    "</body></html>"
)


def _manifest(tmp_path: Path, packages=()) -> CargoMetadata:
    root = CargoPackage(name="app", id="app 0.1.0", version="0.1.0")
    return CargoMetadata(
        manifest_path=str(tmp_path / "Cargo.toml"),
        package=root,
        target_directory=tmp_path / "target",
        packages=[root, *packages],
    )


def _cfg(tmp_path: Path, **kwargs) -> BuildConfig:
    return BuildConfig(target=tmp_path / "index.html", staging_dist=tmp_path / "dist", **kwargs)


def test_parse_app_type():
    assert parse_app_type("main") is RustAppType.MAIN
    assert parse_app_type("worker") is RustAppType.WORKER
    with pytest.raises(ValueError, match="data-type"):
        parse_app_type("Main")


@pytest.mark.parametrize("level", list(WasmOptLevel))
def test_wasm_opt_level_round_trip(level):
    assert parse_wasm_opt_level(level.value) is level


def test_wasm_opt_level_aliases_and_errors():
    assert parse_wasm_opt_level("") is WasmOptLevel.DEFAULT
    assert parse_wasm_opt_level("0") is WasmOptLevel.OFF
    assert parse_wasm_opt_level("S") is WasmOptLevel.S
    assert parse_wasm_opt_level("Z") is WasmOptLevel.Z
    with pytest.raises(ValueError, match="unknown wasm-opt level"):
        parse_wasm_opt_level("5")


def test_pattern_evaluate_plain_and_file(tmp_path):
    snippet = tmp_path / "snippet.html"
    snippet.write_text("<b>hi</b>")
    params = {"js": "app.js", "extra": f"@{snippet}", "missing": "@/no/such/file"}
    result = pattern_evaluate("{js}|{extra}|{missing}", params)
    assert result == "app.js|<b>hi</b>|{missing}"


def test_find_version_prefers_configured(tmp_path):
    assert find_wasm_bindgen_version("0.2.75", _manifest(tmp_path)) == "0.2.75"


def test_find_version_from_lockfile(tmp_path):
    (tmp_path / "Cargo.lock").write_text(
        '[[package]]\nname = "serde"\nversion = "1.0.0"\n\n'
        '[[package]]\nname = "wasm-bindgen"\nversion = "0.2.79"\n'
    )
    dep = CargoPackage(name="wasm-bindgen", id="wb", version="0.2.70")
    assert find_wasm_bindgen_version(None, _manifest(tmp_path, [dep])) == "0.2.79"


def test_find_version_from_manifest_and_none(tmp_path):
    dep = CargoPackage(name="wasm-bindgen", id="wb", version="0.2.74")
    assert find_wasm_bindgen_version(None, _manifest(tmp_path, [dep])) == "0.2.74"
    assert find_wasm_bindgen_version(None, _manifest(tmp_path)) is None


@pytest.mark.asyncio
async def test_finalize_main_replaces_link(tmp_path):
    dom = BeautifulSoup(HTML, "html.parser")
    output = RustAppOutput(
        cfg=_cfg(tmp_path), id=0, js_output="app.js", wasm_output="app_bg.wasm",
        type_=RustAppType.MAIN,
    )
    await output.finalize(dom)
    assert dom.select(trunk_id_selector(0)) == []
    script = dom.select_one("body script")
    assert script["type"] == "module"
    assert script.string == "import init from '/app.js';init('/app_bg.wasm');"
    preload = dom.select_one('head link[rel="preload"]')
    assert preload["href"] == "/app_bg.wasm"
    assert dom.select_one('head link[rel="modulepreload"]')["href"] == "/app.js"


@pytest.mark.asyncio
async def test_finalize_worker_removes_link(tmp_path):
    dom = BeautifulSoup(HTML, "html.parser")
    output = RustAppOutput(
        cfg=_cfg(tmp_path), id=0, js_output="w.js", wasm_output="w_bg.wasm",
        type_=RustAppType.WORKER,
    )
    await output.finalize(dom)
    assert dom.select("link") == []
    assert dom.select("script") == []


@pytest.mark.asyncio
async def test_finalize_patterns_without_id(tmp_path):
    dom = BeautifulSoup("<html><head></head><body></body></html>", "html.parser")
    cfg = _cfg(
        tmp_path,
        public_url="/base/",
        pattern_script='<script src="{base}{js}" data-x="{extra}"></script>',
        pattern_preload='<meta name="wasm" content="{wasm}">',
        pattern_params={"extra": "value"},
    )
    output = RustAppOutput(
        cfg=cfg, id=None, js_output="a.js", wasm_output="a_bg.wasm", type_=RustAppType.MAIN
    )
    await output.finalize(dom)
    script = dom.select_one("body script")
    assert script["src"] == "/base/a.js"
    assert script["data-x"] == "value"
    assert dom.select_one("head meta")["content"] == "a_bg.wasm"


@pytest.mark.asyncio
async def test_rust_app_rejects_bad_type(tmp_path):
    with pytest.raises(ValueError, match="data-type"):
        await rust_app_from_attrs(_cfg(tmp_path), tmp_path, None, {"data-type": "lib"}, 0)


@pytest.mark.asyncio
async def test_rust_app_rejects_bad_opt_level(tmp_path):
    with pytest.raises(ValueError, match="wasm-opt"):
        await rust_app_from_attrs(_cfg(tmp_path), tmp_path, None, {"data-wasm-opt": "9"}, 0)