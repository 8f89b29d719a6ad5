import zipfile
from pathlib import Path

import pytest

from buildphp import ArtifactPackager, PackagingError


@pytest.fixture
def packager():
    return ArtifactPackager()


@pytest.fixture
def binary(tmp_path):
    path = tmp_path / "buildroot" / "bin" / "php"
    path.parent.mkdir(parents=True)
    path.write_bytes(b"\x7fELF" + b"\0" * 64)
    path.chmod(0o755)
    return path


def test_archive_path_convention():
    path = ArtifactPackager.archive_path("dist", "Linux", "x64", "8.3.21")
    assert path == Path("dist") / "Linux" / "x64" / "php-8.3.21.zip"


def test_package_single_entry(packager, binary, tmp_path):
    archive = tmp_path / "dist" / "Linux" / "x64" / "php-8.3.21.zip"
    result = packager.package(binary, archive, "php")
    assert result == archive
    with zipfile.ZipFile(archive) as zf:
        assert zf.namelist() == ["php"]
        assert zf.read("php") == binary.read_bytes()


def test_package_uses_canonical_name(packager, binary, tmp_path):
    archive = tmp_path / "out.zip"
    packager.package(binary, archive, "micro.sfx")
    with zipfile.ZipFile(archive) as zf:
        assert zf.namelist() == ["micro.sfx"]


def test_package_defaults_to_binary_name(packager, binary, tmp_path):
    archive = tmp_path / "out.zip"
    packager.package(binary, archive)
    with zipfile.ZipFile(archive) as zf:
        assert zf.namelist() == ["php"]


def test_package_overwrites_previous_archive(packager, binary, tmp_path):
    archive = tmp_path / "out.zip"
    packager.package(binary, archive, "old-name")
    packager.package(binary, archive, "php")
    with zipfile.ZipFile(archive) as zf:
        assert zf.namelist() == ["php"]


def test_missing_binary_creates_no_archive(packager, tmp_path):
    archive = tmp_path / "dist" / "Linux" / "x64" / "php-8.3.21.zip"
    with pytest.raises(PackagingError):
        packager.package(tmp_path / "nope" / "php", archive, "php")
    assert not archive.exists()
    assert not archive.parent.exists()


def test_unwritable_destination(packager, binary, tmp_path):
    blocker = tmp_path / "dist"
    blocker.write_text("a file where a directory should be")
    with pytest.raises(PackagingError):
        packager.package(binary, blocker / "Linux" / "php.zip", "php")
