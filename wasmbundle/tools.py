"""Locate external tools, downloading and installing them when they are missing."""

from __future__ import annotations

import asyncio
import logging
import os
import platform
import shutil
import sys
import tarfile
import zipfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import BinaryIO

import aiohttp
import platformdirs

log = logging.getLogger(__name__)


def _is_windows() -> bool:
    return sys.platform == "win32"


def _is_macos() -> bool:
    return sys.platform == "darwin"


def _is_linux() -> bool:
    return sys.platform.startswith("linux")


def _is_x86_64() -> bool:
    return platform.machine().lower() in ("x86_64", "amd64")


class Application(Enum):
    """An external tool that can be located or downloaded."""

    SASS = "sass"
    WASM_BINDGEN = "wasm-bindgen"
    WASM_OPT = "wasm-opt"

    def binary_name(self) -> str:
        """Base name of the executable without extension."""
        return self.value

    def path(self) -> str:
        """Path of the executable within the downloaded archive."""
        if _is_windows():
            return {
                Application.SASS: "sass.bat",
                Application.WASM_BINDGEN: "wasm-bindgen.exe",
                Application.WASM_OPT: "bin/wasm-opt.exe",
            }[self]
        return {
            Application.SASS: "sass",
            Application.WASM_BINDGEN: "wasm-bindgen",
            Application.WASM_OPT: "bin/wasm-opt",
        }[self]

    def extra_paths(self) -> list[str]:
        """Additional archive files required to run the main binary."""
        if self is Application.SASS:
            if _is_windows():
                return ["src/dart.exe", "src/sass.snapshot"]
            if _is_macos():
                return ["src/dart", "src/sass.snapshot"]
            return []
        if self is Application.WASM_OPT and _is_macos():
            return ["lib/libbinaryen.dylib"]
        return []

    def default_version(self) -> str:
        """Version used when none is configured."""
        return {
            Application.SASS: "1.50.0",
            Application.WASM_BINDGEN: "0.2.80",
            Application.WASM_OPT: "version_105",
        }[self]

    def target(self) -> str:
        """Platform part of the download URL; raises RuntimeError if unsupported."""
        if not _is_x86_64():
            raise RuntimeError("unsupported architecture")
        if self is Application.WASM_BINDGEN:
            if _is_windows():
                return "pc-windows-msvc"
            if _is_macos():
                return "apple-darwin"
            if _is_linux():
                return "unknown-linux-musl"
        else:
            if _is_windows():
                return "windows"
            if _is_macos():
                return "macos"
            if _is_linux():
                return "linux"
        raise RuntimeError("unsupported OS")

    def url(self, version: str) -> str:
        """Direct URL of the release archive for the given version."""
        target = self.target()
        if self is Application.SASS:
            extension = "zip" if _is_windows() else "tar.gz"
            return (
                f"https://github.com/sass/dart-sass/releases/download/{version}/"
                f"dart-sass-{version}-{target}-x64.{extension}"
            )
        if self is Application.WASM_BINDGEN:
            return (
                f"https://github.com/rustwasm/wasm-bindgen/releases/download/{version}/"
                f"wasm-bindgen-{version}-x86_64-{target}.tar.gz"
            )
        return (
            f"https://github.com/WebAssembly/binaryen/releases/download/{version}/"
            f"binaryen-{version}-x86_64-{target}.tar.gz"
        )

    def version_test(self) -> str:
        """The command-line flag used to query the tool's version."""
        return "--version"

    def format_version_output(self, text: str) -> str:
        """Extract the version string from the tool's version output."""
        text = text.strip()
        error = ValueError(f"missing or malformed version output: {text}")
        if self is Application.SASS:
            lines = text.splitlines()
            if not lines:
                raise error
            return lines[0]
        words = text.split(" ")
        if self is Application.WASM_BINDGEN:
            if len(words) < 2:
                raise error
            return words[1]
        if len(words) < 3:
            raise error
        return f"version_{words[2]}"


def _strip_first_component(parts: tuple[str, ...]) -> tuple[str, ...]:
    return parts[1:]


def _enclosed_name(name: str) -> tuple[str, ...]:
    path = PurePosixPath(name.replace("\\", "/"))
    if path.is_absolute() or ".." in path.parts or "\0" in name:
        raise ValueError(f"invalid entry path: {name!r}")
    return path.parts


def _write_output(source: BinaryIO, file: str, target: Path) -> Path:
    out = Path(target, *file.split("/"))
    out.parent.mkdir(parents=True, exist_ok=True)
    with out.open("wb") as dest:
        shutil.copyfileobj(source, dest)
    return out


def _set_permissions(path: Path, mode: int) -> None:
    if os.name == "posix":
        os.chmod(path, mode & 0o7777)


@dataclass(frozen=True)
class Archive:
    """A downloaded release archive, either gzipped tar or zip."""

    path: Path
    zipped: bool = False

    def extract_file(self, file: str, target: Path) -> None:
        """Extract ``file`` (path without the archive's top folder) below ``target``."""
        wanted = PurePosixPath(file).parts
        target = Path(target)
        if self.zipped:
            self._extract_zip(file, wanted, target)
        else:
            self._extract_tar(file, wanted, target)

    def _extract_tar(self, file: str, wanted: tuple[str, ...], target: Path) -> None:
        with tarfile.open(self.path, "r:gz") as archive:
            for member in archive:
                parts = _strip_first_component(PurePosixPath(member.name).parts)
                if parts != wanted:
                    continue
                source = archive.extractfile(member)
                if source is None:
                    raise FileNotFoundError(f"file not found in archive: {file}")
                with source:
                    out = _write_output(source, file, target)
                _set_permissions(out, member.mode)
                return
        raise FileNotFoundError(f"file not found in archive: {file}")

    def _extract_zip(self, file: str, wanted: tuple[str, ...], target: Path) -> None:
        with zipfile.ZipFile(self.path) as archive:
            for info in archive.infolist():
                parts = _strip_first_component(_enclosed_name(info.filename))
                if parts != wanted:
                    continue
                with archive.open(info) as source:
                    out = _write_output(source, file, target)
                if info.create_system == 3:
                    mode = info.external_attr >> 16
                    if mode:
                        _set_permissions(out, mode)
                return
        raise FileNotFoundError(f"file not found in archive: {file}")


@dataclass
class AppCache:
    """Tracks tools installed during this run so each is installed only once."""

    _installed: set[tuple[Application, str]] = field(default_factory=set)
    _locks: dict[tuple[Application, str], asyncio.Lock] = field(default_factory=dict)

    async def install_once(self, app: Application, version: str, app_dir: Path) -> None:
        """Download and install ``app`` at ``version`` into ``app_dir`` unless done already."""
        key = (app, version)
        if key in self._installed:
            return
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            if key in self._installed:
                return
            path = await download(app, version)
            await install(app, path, Path(app_dir))
            path.unlink()
            self._installed.add(key)


_GLOBAL_APP_CACHE = AppCache()


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


async def get(app: Application, version: str | None = None) -> Path:
    """Locate the given application, downloading it if it is missing."""
    found = await find_system(app, version)
    if found is not None:
        path, system_version = found
        log.info("using system installed binary %s %s", app.binary_name(), system_version)
        return path

    directory = await cache_dir()
    version = version or app.default_version()
    app_dir = directory / f"{app.binary_name()}-{version}"
    bin_path = app_dir / app.path()

    if not _is_executable(bin_path):
        await _GLOBAL_APP_CACHE.install_once(app, version, app_dir)
    return bin_path


async def find_system(app: Application, version: str | None = None) -> tuple[Path, str] | None:
    """Find a system-installed copy of the application matching ``version`` if given."""
    try:
        located = shutil.which(app.binary_name())
        if located is None:
            raise FileNotFoundError(f"{app.binary_name()} not found on PATH")
        path = Path(located)
        proc = await asyncio.create_subprocess_exec(
            str(path),
            app.version_test(),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, _ = await proc.communicate()
        if proc.returncode != 0:
            raise RuntimeError(f"running command `{path} {app.version_test()}` failed")
        system_version = app.format_version_output(stdout.decode("utf-8", errors="replace"))
    except (OSError, RuntimeError, ValueError) as err:
        log.debug("system version not found for %s: %s", app.binary_name(), err)
        return None

    if version is not None and version != system_version:
        return None
    return path, system_version


async def download(app: Application, version: str) -> Path:
    """Download the release archive of ``app`` to a temporary file in the cache dir."""
    log.info("downloading %s %s", app.binary_name(), version)
    directory = await cache_dir()
    temp_out = directory / f"{app.binary_name()}-{version}.tmp"
    url = app.url(version)

    async with aiohttp.ClientSession() as session:
        async with session.get(url) as resp:
            if not 200 <= resp.status < 300:
                raise RuntimeError(f"error downloading archive file: {resp.status}\n{url}")
            with temp_out.open("wb") as out:
                async for chunk in resp.content.iter_chunked(64 * 1024):
                    out.write(chunk)
    return temp_out


def _install_blocking(app: Application, archive_path: Path, target: Path) -> None:
    archive = Archive(Path(archive_path), zipped=app is Application.SASS and _is_windows())
    archive.extract_file(app.path(), target)
    for extra in app.extra_paths():
        archive.extract_file(extra, target)


async def install(app: Application, archive_path: Path, target: Path) -> None:
    """Extract the application and its extra files from the archive into ``target``."""
    log.info("installing %s", app.binary_name())
    await asyncio.to_thread(_install_blocking, app, Path(archive_path), Path(target))


async def cache_dir() -> Path:
    """Return the tool cache directory, creating it if needed."""
    path = Path(platformdirs.user_cache_dir("trunk", "trunkrs"))
    await asyncio.to_thread(path.mkdir, parents=True, exist_ok=True)
    return path