# wasmbundle

`wasmbundle` builds web applications whose logic is compiled to WebAssembly.
It reads a source `index.html`, finds the `<link data-trunk rel="..." .../>`
elements in it, runs an asset pipeline for each of them and writes a finished
`index.html` together with all assets into a staging directory. It also
locates or downloads the external tools the build needs, watches source
directories to rebuild on change, and offers aiohttp handlers that proxy HTTP
requests and WebSocket connections to a backend.

## Building a page

```python
import asyncio
from pathlib import Path

from wasmbundle.pipelines.assets import BuildConfig
from wasmbundle.pipelines.html import HtmlPipeline

cfg = BuildConfig(target=Path("index.html"), staging_dist=Path("dist"))
asyncio.run(HtmlPipeline(cfg).run())
```

`BuildConfig` holds `public_url` (default `/`), `release`, `filehash`
(hashed output file names, on by default), `inject_autoloader`, the tool
versions in `tools` (a `ToolsConfig`), and the optional `pattern_script`,
`pattern_preload` and `pattern_params`. The staging directory must exist
before the pipeline runs.

`HtmlPipeline.run()` gives each `<link data-trunk>` element an id, builds its
pipeline, runs all pipelines concurrently, lets each output rewrite the
document, then calls `finalize_html()`: `<base data-trunk-public-url>` elements
in the head get `href` set to the public URL, and, when `inject_autoloader` is
set, a script is appended to the body that opens a WebSocket at `/_trunk/ws`
and reloads the page on a `{"reload": true}` message.

## Asset pipelines

Each `<link data-trunk>` element names its pipeline with `rel`; the mapping
is done by `wasmbundle.pipelines.html.link_from_html`:

| `rel`            | Module                          | What happens                                                     |
|------------------|---------------------------------|------------------------------------------------------------------|
| `rust`           | `wasmbundle.pipelines.rust`     | builds with `cargo`, runs `wasm-bindgen`, and `wasm-opt` in release mode |
| `css`            | `wasmbundle.pipelines.css`      | copies the stylesheet and links it                               |
| `sass` / `scss`  | `wasmbundle.pipelines.sass`     | compiles with `sass`; `data-inline` puts the CSS in a `<style>` tag |
| `icon`           | `wasmbundle.pipelines.icon`     | copies the icon and links it                                     |
| `inline`         | `wasmbundle.pipelines.inline`   | pastes HTML, CSS or JS into the page (`type="html"`, `"css"` or `"js"`, else the file extension) |
| `copy-file`      | `wasmbundle.pipelines.copy_file`| copies one file and removes the link                             |
| `copy-dir`       | `wasmbundle.pipelines.copy_dir` | copies a directory, keeping its name, and removes the link       |

Any other `rel`, or a missing one, raises `ValueError`. If no main `rust` link
is present, `default_rust_app` uses the `Cargo.toml` next to the HTML file;
more than one main `rust` link raises `ValueError`.

Options on the `rust` link:

- `href` – path to the crate or its `Cargo.toml`
- `data-bin` – build only this binary
- `data-cargo-features` – features to enable
- `data-type` – `main` (default) or `worker`; workers keep an unhashed name
  and only have their link removed
- `data-keep-debug`, `data-no-demangle` – passed on to `wasm-bindgen`
- `data-wasm-opt` – empty, `0`, `1`, `2`, `3`, `4`, `s` or `z`; without it
  release builds use the default level and debug builds skip `wasm-opt`

The `wasm-bindgen` version is taken from `ToolsConfig.wasm_bindgen`, else from
`Cargo.lock`, else from the crate's dependencies (`find_wasm_bindgen_version`).

Shared helpers live in `wasmbundle.pipelines.assets`: `AssetFile`,
`content_hash` (64-bit SeaHash used in hashed file names), `href_to_path`,
`trunk_id_selector`, `run_command`, `copy_dir_recursive` and `strip_prefix`.

## Script and preload patterns

The tags injected for the main application can be replaced by templates.
Placeholders in braces are filled from `pattern_params`; `{base}`, `{js}` and
`{wasm}` are always provided, and a value starting with `@` is replaced by the
contents of the named file:

```python
from wasmbundle.pipelines.rust import pattern_evaluate

html = pattern_evaluate(
    "<script src='{base}{js}'></script>",
    {"base": "/", "js": "app.js"},
)
assert html == "<script src='/app.js'></script>"
```

## External tools

`wasmbundle.tools.get(Application.WASM_BINDGEN, "0.2.80")` returns the path
of a usable binary. `sass`, `wasm-bindgen` and `wasm-opt` are looked up on the
`PATH` first (`find_system`); when missing, or when their version does not
match the one requested, the x86_64 release archive is downloaded once into the
user cache directory (`cache_dir()`) and unpacked there. Default versions come
from `Application.default_version()`.

## Watching for changes

`wasmbundle.watch.WatchSystem(builder, paths, ignored_paths, ...)` watches the
given directories and awaits `builder()` after a burst of changes (debounced by
one second). Changes below ignored paths, or with a `.git` path segment, do not
trigger a build. Paths put on `ignore_chan` are added to the ignored paths,
and `on_build_done` is called after each build. `run()` ends when the
`shutdown` event is set.

## Proxying

`wasmbundle.proxy` provides handlers for an `aiohttp.web.Application`:

- `ProxyHandlerHttp(backend, rewrite=None, insecure=False)` forwards every
  request below its path to the backend and streams the response back;
  `insecure=True` skips TLS certificate checks.
- `ProxyHandlerWebSocket(backend, rewrite=None)` relays WebSocket messages
  both ways between the client and the backend.

Both listen at `rewrite` if given, else at the backend URL's path, and are
added with `register(app)`. `build_outbound_url` shows how the path is joined:

```python
from wasmbundle.proxy import build_outbound_url

assert (
    build_outbound_url("http://localhost:9000/api/", "/users", "a=1")
    == "http://localhost:9000/api/users?a=1"
)
```

## What the package does not do

- There is no command-line program; everything is used from Python code.
- There is no development server: nothing serves the staging directory,
  falls back to `index.html`, or answers the `/_trunk/ws` socket that the
  injected reload script connects to. The proxy handlers and `WatchSystem`
  are building blocks to be wired into an aiohttp application of your own.
- Configuration is not read from any file; `BuildConfig` is built in code.
- Build hooks are not run; `PipelineStage` names the stages only.