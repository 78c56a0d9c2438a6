"""Rust application pipeline: build with cargo, run wasm-bindgen and wasm-opt."""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
import sys
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Sequence

from bs4 import BeautifulSoup

from wasmbundle import tools
from wasmbundle.pipelines.assets import (
    ATTR_HREF,
    SNIPPETS_DIR,
    BuildConfig,
    LinkAttrs,
    content_hash,
    copy_dir_recursive,
    href_to_path,
    run_command,
    trunk_id_selector,
)

log = logging.getLogger(__name__)

TYPE_RUST_APP = "rust"
_LOCK_ENTRY = re.compile(r'^(name|version)\s*=\s*"([^"]*)"\s*$')


class RustAppType(Enum):
    """How the Rust application is used."""

    MAIN = "main"
    WORKER = "worker"


class WasmOptLevel(Enum):
    """Optimization levels accepted by wasm-opt; ``OFF`` skips wasm-opt entirely."""

    DEFAULT = ""
    OFF = "0"
    ONE = "1"
    TWO = "2"
    THREE = "3"
    FOUR = "4"
    S = "s"
    Z = "z"


def parse_app_type(value: str) -> RustAppType:
    """Parse a ``data-type`` value; raises ValueError for unsupported values."""
    try:
        return RustAppType(value)
    except ValueError:
        raise ValueError(
            f'unknown `data-type="{value}"` value for <link data-trunk rel="rust" .../> attr; '
            "please ensure the value is lowercase and is a supported type"
        ) from None


def parse_wasm_opt_level(value: str) -> WasmOptLevel:
    """Parse a wasm-opt level; ``s`` and ``z`` may be upper case."""
    normalized = value.lower() if value in ("S", "Z") else value
    try:
        return WasmOptLevel(normalized)
    except ValueError:
        raise ValueError(f"unknown wasm-opt level `{value}`") from None


def pattern_evaluate(template: str, params: dict[str, str]) -> str:
    """Substitute ``{key}`` placeholders; values starting with ``@`` name a file to insert."""
    result = template
    for key, value in params.items():
        pattern = "{" + key + "}"
        if value.startswith("@"):
            try:
                contents = Path(value[1:]).read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError):
                continue
            result = result.replace(pattern, contents)
        else:
            result = result.replace(pattern, value)
    return result


@dataclass(frozen=True)
class CargoPackage:
    """A package entry from cargo metadata."""

    name: str
    id: str
    version: str


@dataclass
class CargoMetadata:
    """Metadata of the target Cargo project."""

    manifest_path: str
    package: CargoPackage
    target_directory: Path
    packages: list[CargoPackage] = field(default_factory=list)


def _parse_metadata(data: dict[str, Any], manifest_path: Path) -> CargoMetadata:
    packages = [
        CargoPackage(name=pkg["name"], id=pkg["id"], version=str(pkg["version"]))
        for pkg in data.get("packages", [])
    ]
    raw_manifests = {pkg["id"]: pkg.get("manifest_path") for pkg in data.get("packages", [])}
    root_id = (data.get("resolve") or {}).get("root")
    package = next((pkg for pkg in packages if pkg.id == root_id), None)
    if package is None:
        package = next(
            (
                pkg
                for pkg in packages
                if raw_manifests.get(pkg.id)
                and Path(raw_manifests[pkg.id]).resolve() == manifest_path
            ),
            None,
        )
    if package is None:
        raise ValueError(f"could not find the root package of {manifest_path}")
    return CargoMetadata(
        manifest_path=str(manifest_path),
        package=package,
        target_directory=Path(data["target_directory"]),
        packages=packages,
    )


async def load_cargo_metadata(manifest_path: Path) -> CargoMetadata:
    """Run ``cargo metadata`` for the given manifest and collect the parts needed."""
    try:
        manifest = Path(manifest_path).resolve(strict=True)
    except OSError as err:
        raise FileNotFoundError(f"error getting canonical path of {manifest_path}") from err
    proc = await asyncio.create_subprocess_exec(
        "cargo",
        "metadata",
        "--format-version",
        "1",
        "--manifest-path",
        str(manifest),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise RuntimeError(
            "error getting cargo metadata: " + stderr.decode("utf-8", errors="replace")
        )
    return _parse_metadata(json.loads(stdout), manifest)


def _lockfile_version(lock_path: Path, name: str) -> str | None:
    try:
        text = lock_path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None
    entries: list[dict[str, str]] = []
    current: dict[str, str] | None = None
    for line in text.splitlines():
        stripped = line.strip()
        if stripped.startswith("["):
            current = {} if stripped == "[[package]]" else None
            if current is not None:
                entries.append(current)
            continue
        if current is not None:
            match = _LOCK_ENTRY.match(stripped)
            if match:
                current[match.group(1)] = match.group(2)
    return next(
        (entry["version"] for entry in entries if entry.get("name") == name and "version" in entry),
        None,
    )


def find_wasm_bindgen_version(configured: str | None, manifest: CargoMetadata) -> str | None:
    """Pick the wasm-bindgen version: configured, then Cargo.lock, then the dependency list."""
    if configured is not None:
        return configured
    lock_path = Path(manifest.manifest_path).parent / "Cargo.lock"
    locked = _lockfile_version(lock_path, "wasm-bindgen")
    if locked is not None:
        return locked
    return next((pkg.version for pkg in manifest.packages if pkg.name == "wasm-bindgen"), None)


def _fragment(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


@dataclass
class RustAppOutput:
    """Result of a Rust application pipeline."""

    cfg: BuildConfig
    id: int | None
    js_output: str
    wasm_output: str
    type_: RustAppType

    async def finalize(self, dom: BeautifulSoup) -> None:
        """Insert the preload links and the loader script into the document."""
        if self.type_ is RustAppType.WORKER:
            if self.id is not None:
                for node in dom.select(trunk_id_selector(self.id)):
                    node.decompose()
            return

        base, js, wasm = self.cfg.public_url, self.js_output, self.wasm_output
        params = dict(self.cfg.pattern_params or {})
        params.update(base=base, js=js, wasm=wasm)

        if self.cfg.pattern_preload is not None:
            preload = pattern_evaluate(self.cfg.pattern_preload, params)
        else:
            preload = (
                f'\n<link rel="preload" href="{base}{wasm}" as="fetch" '
                f'type="application/wasm" crossorigin>\n'
                f'<link rel="modulepreload" href="{base}{js}">'
            )
        for head in dom.select("html head"):
            for child in list(_fragment(preload).contents):
                head.append(child)

        if self.cfg.pattern_script is not None:
            script = pattern_evaluate(self.cfg.pattern_script, params)
        else:
            script = (
                f"<script type=\"module\">import init from '{base}{js}';"
                f"init('{base}{wasm}');</script>"
            )
        if self.id is not None:
            for node in dom.select(trunk_id_selector(self.id)):
                node.replace_with(_fragment(script))
        else:
            for body in dom.select("html body"):
                for child in list(_fragment(script).contents):
                    body.append(child)


async def _run_tool(name: str, path: Path | str, args: Sequence[str]) -> None:
    try:
        await run_command(name, path, args)
    except FileNotFoundError as err:
        raise FileNotFoundError(f"{name} not found") from err


async def _copy(src: Path, dst: Path, what: str) -> None:
    try:
        await asyncio.to_thread(shutil.copyfile, src, dst)
    except OSError as err:
        raise OSError(f"error copying {what}") from err


@dataclass
class RustApp:
    """Pipeline building a Rust crate to WebAssembly."""

    cfg: BuildConfig
    manifest: CargoMetadata
    name: str
    id: int | None = None
    app_type: RustAppType = RustAppType.MAIN
    cargo_features: str | None = None
    ignore_chan: asyncio.Queue[Path] | None = None
    bin: str | None = None
    keep_debug: bool = False
    no_demangle: bool = False
    wasm_opt: WasmOptLevel = WasmOptLevel.OFF

    TYPE_RUST_APP = TYPE_RUST_APP

    async def run(self) -> RustAppOutput:
        """Build the crate, generate bindings and optimize the result."""
        wasm, hashed_name = await self._cargo_build()
        output = await self._wasm_bindgen_build(wasm, hashed_name)
        await self._wasm_opt_build(output.wasm_output)
        return output

    def _cargo_args(self) -> list[str]:
        args = [
            "build",
            "--target=wasm32-unknown-unknown",
            "--manifest-path",
            self.manifest.manifest_path,
        ]
        if self.cfg.release:
            args.append("--release")
        if self.bin is not None:
            args += ["--bin", self.bin]
        if self.cargo_features is not None:
            args += ["--features", self.cargo_features]
        return args

    def _find_artifact(self, stdout: bytes) -> dict[str, Any]:
        artifact: dict[str, Any] | None = None
        failed = False
        for line in stdout.decode("utf-8", errors="replace").splitlines():
            try:
                msg = json.loads(line)
            except json.JSONDecodeError:
                continue
            if not isinstance(msg, dict):
                continue
            reason = msg.get("reason")
            if reason == "compiler-artifact" and msg.get("package_id") == self.manifest.package.id:
                artifact, failed = msg, False
            elif reason == "build-finished" and not msg.get("success", False):
                failed = True
        if failed:
            raise RuntimeError("error while fetching cargo artifact info")
        if artifact is None:
            raise RuntimeError("cargo artifacts not found for target crate")
        return artifact

    async def _cargo_build(self) -> tuple[Path, str]:
        log.info("building %s", self.manifest.package.name)
        args = self._cargo_args()
        build_error: Exception | None = None
        try:
            await run_command("cargo", "cargo", args)
        except (OSError, RuntimeError) as err:
            build_error = err

        # The target dir must be ignored even when the build failed.
        if self.ignore_chan is not None:
            try:
                self.ignore_chan.put_nowait(self.manifest.target_directory)
            except asyncio.QueueFull:
                pass
        if build_error is not None:
            raise RuntimeError("error during cargo build execution") from build_error

        log.info("fetching cargo artifacts")
        args.append("--message-format=json")
        proc = await asyncio.create_subprocess_exec(
            "cargo", *args, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
        )
        stdout, stderr = await proc.communicate()
        if proc.returncode != 0:
            print(stderr.decode("utf-8", errors="replace"), file=sys.stderr)
            raise RuntimeError("bad status returned from cargo artifacts request")

        artifact = self._find_artifact(stdout)
        wasm = next(
            (Path(name) for name in artifact.get("filenames", []) if Path(name).suffix == ".wasm"),
            None,
        )
        if wasm is None:
            raise RuntimeError("could not find WASM output after cargo build")

        log.info("processing WASM for %s", self.name)
        try:
            wasm_bytes = await asyncio.to_thread(wasm.read_bytes)
        except OSError as err:
            raise OSError("error reading wasm file for hash generation") from err
        if self.cfg.filehash:
            hashed_name = f"{self.name}-{content_hash(wasm_bytes):x}"
        else:
            hashed_name = self.name
        return wasm, hashed_name

    async def _wasm_bindgen_build(self, wasm: Path, hashed_name: str) -> RustAppOutput:
        # Workers are loaded by name at runtime, so they never get a hashed name.
        if self.app_type is RustAppType.WORKER:
            hashed_name = self.name

        version = find_wasm_bindgen_version(self.cfg.tools.wasm_bindgen, self.manifest)
        wasm_bindgen = await tools.get(tools.Application.WASM_BINDGEN, version)

        bindgen_name = tools.Application.WASM_BINDGEN.binary_name()
        mode_segment = "release" if self.cfg.release else "debug"
        bindgen_out = Path(self.manifest.target_directory) / bindgen_name / mode_segment
        await asyncio.to_thread(bindgen_out.mkdir, parents=True, exist_ok=True)

        target_type = (
            "--target=web" if self.app_type is RustAppType.MAIN else "--target=no-modules"
        )
        args = [
            target_type,
            f"--out-dir={bindgen_out}",
            f"--out-name={hashed_name}",
            "--no-typescript",
            str(wasm),
        ]
        if self.keep_debug:
            args.append("--keep-debug")
        if self.no_demangle:
            args.append("--no-demangle")

        log.info("calling wasm-bindgen for %s", self.name)
        await _run_tool(bindgen_name, wasm_bindgen, args)

        log.info("copying generated wasm-bindgen artifacts")
        js_name = f"{hashed_name}.js"
        wasm_name = f"{hashed_name}_bg.wasm"
        staging = Path(self.cfg.staging_dist)
        await _copy(bindgen_out / js_name, staging / js_name, "JS loader file to stage dir")
        await _copy(bindgen_out / wasm_name, staging / wasm_name, "wasm file to stage dir")

        snippets = bindgen_out / SNIPPETS_DIR
        if snippets.exists():
            try:
                await copy_dir_recursive(snippets, staging / SNIPPETS_DIR)
            except OSError as err:
                raise OSError("error copying snippets dir to stage dir") from err

        return RustAppOutput(
            cfg=self.cfg,
            id=self.id,
            js_output=js_name,
            wasm_output=wasm_name,
            type_=self.app_type,
        )

    async def _wasm_opt_build(self, hashed_name: str) -> None:
        if not self.cfg.release or self.wasm_opt is WasmOptLevel.OFF:
            return

        wasm_opt = await tools.get(tools.Application.WASM_OPT, self.cfg.tools.wasm_opt)
        opt_name = tools.Application.WASM_OPT.binary_name()
        output_dir = Path(self.manifest.target_directory) / opt_name / "release"
        await asyncio.to_thread(output_dir.mkdir, parents=True, exist_ok=True)

        output = output_dir / hashed_name
        target_wasm = Path(self.cfg.staging_dist) / hashed_name
        args = [f"--output={output}", f"-O{self.wasm_opt.value}", str(target_wasm)]

        log.info("calling wasm-opt")
        await _run_tool(opt_name, wasm_opt, args)

        log.info("copying generated wasm-opt artifacts")
        await _copy(output, target_wasm, "wasm file to dist dir")


async def rust_app_from_attrs(
    cfg: BuildConfig,
    html_dir: Path,
    ignore_chan: asyncio.Queue[Path] | None,
    attrs: LinkAttrs,
    id: int,
) -> RustApp:
    """Build a Rust app pipeline from the attributes of its link element."""
    html_dir = Path(html_dir)
    href = attrs.get(ATTR_HREF)
    if href is not None:
        manifest_path = href_to_path(href)
        if not manifest_path.is_absolute():
            manifest_path = html_dir / manifest_path
        if manifest_path.name != "Cargo.toml":
            manifest_path = manifest_path / "Cargo.toml"
    else:
        manifest_path = html_dir / "Cargo.toml"

    bin_name = attrs.get("data-bin")
    app_type = parse_app_type(attrs.get("data-type", "main"))
    if "data-wasm-opt" in attrs:
        wasm_opt = parse_wasm_opt_level(attrs["data-wasm-opt"])
    else:
        wasm_opt = WasmOptLevel.DEFAULT if cfg.release else WasmOptLevel.OFF
    manifest = await load_cargo_metadata(manifest_path)

    return RustApp(
        cfg=cfg,
        manifest=manifest,
        name=bin_name if bin_name is not None else manifest.package.name,
        id=id,
        app_type=app_type,
        cargo_features=attrs.get("data-cargo-features"),
        ignore_chan=ignore_chan,
        bin=bin_name,
        keep_debug="data-keep-debug" in attrs,
        no_demangle="data-no-demangle" in attrs,
        wasm_opt=wasm_opt,
    )


async def default_rust_app(
    cfg: BuildConfig, html_dir: Path, ignore_chan: asyncio.Queue[Path] | None
) -> RustApp:
    """Build the implicit Rust app pipeline for the crate next to the HTML file."""
    manifest = await load_cargo_metadata(Path(html_dir) / "Cargo.toml")
    return RustApp(
        cfg=cfg,
        manifest=manifest,
        name=manifest.package.name,
        ignore_chan=ignore_chan,
    )