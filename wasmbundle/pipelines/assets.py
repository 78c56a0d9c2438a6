"""Shared pieces of the asset pipelines: build config, asset files and helpers."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Sequence

log = logging.getLogger(__name__)

ATTR_INLINE = "data-inline"
ATTR_HREF = "href"
ATTR_TYPE = "type"
ATTR_REL = "rel"
SNIPPETS_DIR = "snippets"
TRUNK_ID = "data-trunk-id"

LinkAttrs = dict[str, str]
"""All attributes of a single ``<link data-trunk .../>`` element."""

_MASK = (1 << 64) - 1
_PCG = 0x6EED0E9DA4D94A4F
_SEEDS = (
    0x16F11FE89B0D677C,
    0xB480A793D8E6C86C,
    0x6FE2E5AAF078EBC9,
    0x14F994A4C5259381,
)


@dataclass
class ToolsConfig:
    """Versions of external tools to use; ``None`` means locate or use the default."""

    sass: str | None = None
    wasm_bindgen: str | None = None
    wasm_opt: str | None = None


@dataclass
class BuildConfig:
    """Runtime configuration of a build."""

    target: Path
    staging_dist: Path
    final_dist: Path | None = None
    public_url: str = "/"
    release: bool = False
    filehash: bool = True
    inject_autoloader: bool = True
    tools: ToolsConfig = field(default_factory=ToolsConfig)
    pattern_script: str | None = None
    pattern_preload: str | None = None
    pattern_params: dict[str, str] | None = None


class PipelineStage(Enum):
    """A stage of the build process, used to decide when a hook runs."""

    PRE_BUILD = "pre_build"
    BUILD = "build"
    POST_BUILD = "post_build"


def trunk_id_selector(id: int) -> str:
    """CSS selector matching the link element carrying the given pipeline ID."""
    return f'link[{TRUNK_ID}="{id}"]'


def href_to_path(href: str) -> Path:
    """Turn a ``/``-separated href into a filesystem path."""
    return Path(*href.split("/"))


def _diffuse(value: int) -> int:
    value = (value * _PCG) & _MASK
    value ^= (value >> 32) >> (value >> 60)
    return (value * _PCG) & _MASK


def content_hash(data: bytes) -> int:
    """64-bit SeaHash of ``data``, used to build cache-busting file names."""
    state = list(_SEEDS)
    view = memoryview(data)
    for offset in range(0, len(view), 8):
        word = int.from_bytes(view[offset : offset + 8], "little")
        mixed = _diffuse(state[0] ^ word)
        state = [state[1], state[2], state[3], mixed]
    return _diffuse(state[0] ^ state[1] ^ state[2] ^ state[3] ^ len(data))


def strip_prefix(path: Path) -> Path:
    """Return ``path`` relative to the working directory when it lies below it."""
    path = Path(path)
    try:
        return path.relative_to(Path.cwd())
    except ValueError:
        return path


async def run_command(name: str, path: Path | str, args: Sequence[str]) -> None:
    """Run an external program, raising RuntimeError when it exits unsuccessfully."""
    log.debug("running %s %s", name, " ".join(args))
    proc = await asyncio.create_subprocess_exec(str(path), *args)
    status = await proc.wait()
    if status != 0:
        raise RuntimeError(f"{name} call returned a bad status: {status}")


async def copy_dir_recursive(src: Path, dst: Path) -> None:
    """Copy the directory tree ``src`` into ``dst``, merging with what exists."""
    src, dst = Path(src), Path(dst)
    if not src.is_dir():
        raise NotADirectoryError(f"source is not a directory: {src}")
    await asyncio.to_thread(shutil.copytree, src, dst, dirs_exist_ok=True)


class AssetFile:
    """An existing file to be processed by a build pipeline."""

    def __init__(self, rel_dir: Path, path: Path) -> None:
        path = Path(path)
        if not path.is_absolute():
            path = Path(rel_dir) / path
        try:
            resolved = path.resolve(strict=True)
        except OSError as err:
            raise FileNotFoundError(f"error getting canonical path for {path}") from err
        if not resolved.exists():
            raise FileNotFoundError(f"target file does not appear to exist on disk {resolved}")
        if not resolved.name:
            raise ValueError(f"asset has no file name {resolved}")
        self.path: Path = resolved
        self.file_name: str = resolved.name
        self.file_stem: str = resolved.stem
        self.ext: str | None = resolved.suffix[1:] or None

    def __repr__(self) -> str:
        return f"AssetFile({str(self.path)!r})"

    async def copy(self, to_dir: Path, with_hash: bool) -> str:
        """Copy the file into ``to_dir`` and return the new base file name.

        With ``with_hash`` the file name carries a hash of the contents.
        """
        try:
            data = await asyncio.to_thread(self.path.read_bytes)
        except OSError as err:
            raise OSError(f"error reading file for copying {self.path}") from err

        if with_hash:
            file_name = f"{self.file_stem}-{content_hash(data):x}.{self.ext or ''}"
        else:
            file_name = self.file_name

        file_path = Path(to_dir) / file_name
        try:
            await asyncio.to_thread(file_path.write_bytes, data)
        except OSError as err:
            raise OSError(f"error copying file {self.path} to {file_path}") from err
        return file_name

    async def read_to_string(self) -> str:
        """Read the file's contents as UTF-8 text."""
        try:
            return await asyncio.to_thread(self.path.read_text, encoding="utf-8")
        except OSError as err:
            raise OSError(f"error reading file {self.path} to string") from err