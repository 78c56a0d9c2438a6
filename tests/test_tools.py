import io
import tarfile
import zipfile
from unittest import mock

import pytest

from wasmbundle.tools import AppCache, Application, Archive, install


def _platform(os_name, machine="x86_64"):
    return (
        mock.patch("sys.platform", os_name),
        mock.patch("platform.machine", return_value=machine),
    )


def _make_tar_gz(path, files):
    with tarfile.open(path, "w:gz") as tar:
        for name, (data, mode) in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = mode
            tar.addfile(info, io.BytesIO(data))


def _make_zip(path, files):
    with zipfile.ZipFile(path, "w") as zf:
        for name, data in files.items():
            info = zipfile.ZipInfo(name)
            info.create_system = 3
            info.external_attr = 0o100755 << 16
            zf.writestr(info, data)


@pytest.mark.parametrize(
    "app, text, expected",
    [
        (Application.WASM_OPT, "wasm-opt version 101 (version_101)", "version_101"),
        (Application.WASM_OPT, "wasm-opt version 101", "version_101"),
        (Application.WASM_BINDGEN, "wasm-bindgen 0.2.75", "0.2.75"),
        (Application.WASM_BINDGEN, "wasm-bindgen 0.2.74 (27c7a4d06)", "0.2.74"),
        (Application.SASS, "1.37.5", "1.37.5"),
    ],
)
def test_format_version_output(app, text, expected):
    assert app.format_version_output(text) == expected


def test_format_version_output_trims_and_takes_first_line():
    assert Application.SASS.format_version_output("  1.50.0\nextra\n") == "1.50.0"


@pytest.mark.parametrize(
    "app, text",
    [
        (Application.SASS, "   "),
        (Application.WASM_BINDGEN, "wasm-bindgen"),
        (Application.WASM_OPT, "wasm-opt version"),
    ],
)
def test_format_version_output_malformed(app, text):
    with pytest.raises(ValueError, match="malformed version output"):
        app.format_version_output(text)


def test_binary_names_and_defaults():
    assert Application.SASS.binary_name() == "sass"
    assert Application.WASM_BINDGEN.binary_name() == "wasm-bindgen"
    assert Application.WASM_OPT.binary_name() == "wasm-opt"
    assert Application.SASS.default_version() == "1.50.0"
    assert Application.WASM_BINDGEN.default_version() == "0.2.80"
    assert Application.WASM_OPT.default_version() == "version_105"
    assert Application.WASM_OPT.version_test() == "--version"


def test_paths_per_platform():
    p1, p2 = _platform("linux")
    with p1, p2:
        assert Application.WASM_OPT.path() == "bin/wasm-opt"
        assert Application.SASS.extra_paths() == []
    p1, p2 = _platform("win32")
    with p1, p2:
        assert Application.WASM_BINDGEN.path() == "wasm-bindgen.exe"
        assert Application.SASS.path() == "sass.bat"
        assert Application.SASS.extra_paths() == ["src/dart.exe", "src/sass.snapshot"]
    p1, p2 = _platform("darwin")
    with p1, p2:
        assert Application.WASM_OPT.extra_paths() == ["lib/libbinaryen.dylib"]
        assert Application.SASS.extra_paths() == ["src/dart", "src/sass.snapshot"]


def test_targets():
    p1, p2 = _platform("linux")
    with p1, p2:
        assert Application.WASM_BINDGEN.target() == "unknown-linux-musl"
        assert Application.SASS.target() == "linux"
    p1, p2 = _platform("darwin")
    with p1, p2:
        assert Application.WASM_BINDGEN.target() == "apple-darwin"
        assert Application.WASM_OPT.target() == "macos"
    p1, p2 = _platform("win32", "AMD64")
    with p1, p2:
        assert Application.WASM_BINDGEN.target() == "pc-windows-msvc"


def test_target_unsupported_arch():
    p1, p2 = _platform("linux", "aarch64")
    with p1, p2, pytest.raises(RuntimeError, match="architecture"):
        Application.SASS.target()


def test_target_unsupported_os():
    p1, p2 = _platform("freebsd13")
    with p1, p2, pytest.raises(RuntimeError, match="OS"):
        Application.WASM_BINDGEN.target()


def test_urls():
    p1, p2 = _platform("linux")
    with p1, p2:
        url = Application.WASM_BINDGEN.url("0.2.80")
        assert url.endswith("/0.2.80/wasm-bindgen-0.2.80-x86_64-unknown-linux-musl.tar.gz")
        assert Application.WASM_OPT.url("version_105").endswith(
            "/version_105/binaryen-version_105-x86_64-linux.tar.gz"
        )
        assert Application.SASS.url("1.50.0").endswith("dart-sass-1.50.0-linux-x64.tar.gz")
    p1, p2 = _platform("win32")
    with p1, p2:
        assert Application.SASS.url("1.50.0").endswith("dart-sass-1.50.0-windows-x64.zip")


def test_archive_tar_extract(tmp_path):
    archive_path = tmp_path / "a.tar.gz"
    _make_tar_gz(
        archive_path,
        {
            "pkg-1.0/README": (b"readme", 0o644),
            "pkg-1.0/bin/wasm-opt": (b"binary", 0o755),
        },
    )
    out = tmp_path / "out"
    Archive(archive_path).extract_file("bin/wasm-opt", out)
    assert (out / "bin" / "wasm-opt").read_bytes() == b"binary"
    Archive(archive_path).extract_file("README", out)
    assert (out / "README").read_bytes() == b"readme"


def test_archive_tar_missing(tmp_path):
    archive_path = tmp_path / "a.tar.gz"
    _make_tar_gz(archive_path, {"pkg/other": (b"x", 0o644)})
    with pytest.raises(FileNotFoundError, match="not found in archive"):
        Archive(archive_path).extract_file("bin/wasm-opt", tmp_path / "out")


def test_archive_zip_extract(tmp_path):
    archive_path = tmp_path / "a.zip"
    _make_zip(archive_path, {"dart-sass/sass.bat": b"echo", "dart-sass/src/dart.exe": b"dart"})
    out = tmp_path / "out"
    archive = Archive(archive_path, zipped=True)
    archive.extract_file("sass.bat", out)
    archive.extract_file("src/dart.exe", out)
    assert (out / "sass.bat").read_bytes() == b"echo"
    assert (out / "src" / "dart.exe").read_bytes() == b"dart"


def test_archive_zip_invalid_entry(tmp_path):
    archive_path = tmp_path / "a.zip"
    with zipfile.ZipFile(archive_path, "w") as zf:
        zf.writestr("../evil", b"x")
    with pytest.raises(ValueError, match="invalid entry path"):
        Archive(archive_path, zipped=True).extract_file("evil", tmp_path / "out")


def test_archive_zip_missing(tmp_path):
    archive_path = tmp_path / "a.zip"
    _make_zip(archive_path, {"top/a": b"a"})
    with pytest.raises(FileNotFoundError):
        Archive(archive_path, zipped=True).extract_file("b", tmp_path / "out")


@pytest.mark.asyncio
async def test_install_from_tar(tmp_path):
    archive_path = tmp_path / "binaryen.tar.gz"
    _make_tar_gz(
        archive_path,
        {
            "binaryen-version_105/bin/wasm-opt": (b"opt", 0o755),
            "binaryen-version_105/lib/libbinaryen.dylib": (b"lib", 0o644),
        },
    )
    target = tmp_path / "wasm-opt-version_105"
    p1, p2 = _platform("darwin")
    with p1, p2:
        await install(Application.WASM_OPT, archive_path, target)
    assert (target / "bin" / "wasm-opt").read_bytes() == b"opt"
    assert (target / "lib" / "libbinaryen.dylib").read_bytes() == b"lib"


@pytest.mark.asyncio
async def test_install_missing_extra_fails(tmp_path):
    archive_path = tmp_path / "binaryen.tar.gz"
    _make_tar_gz(archive_path, {"binaryen/bin/wasm-opt": (b"opt", 0o755)})
    p1, p2 = _platform("darwin")
    with p1, p2, pytest.raises(FileNotFoundError):
        await install(Application.WASM_OPT, archive_path, tmp_path / "out")


def test_app_cache_starts_empty():
    cache = AppCache()
    assert cache._installed == set()