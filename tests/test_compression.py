"""Tests for decompression and archive packaging."""

import subprocess

import pytest

from ssh_imager.exceptions import ArchiveError
from ssh_imager.services.compression import (
    decompress_image,
    get_decompression_tool,
    pack_archive,
    remove_stale_archives,
)


class TestDecompression:
    def test_prefers_pigz(self):
        assert get_decompression_tool() == ("/usr/sbin/pigz", ["-dc"])

    def test_falls_back_to_gzip(self, mock_which):
        mock_which.side_effect = lambda name: None if name == "pigz" else f"/bin/{name}"

        assert get_decompression_tool() == ("/bin/gzip", ["-dc"])

    def test_decompress(self, mocker, tmp_path):
        def fake_run(command, stdout=None, **kwargs):
            stdout.write(b"\0" * 512)
            return subprocess.CompletedProcess(command, 0, None, b"")

        run = mocker.patch("subprocess.run", side_effect=fake_run)
        source = tmp_path / "mypi-20240101T0300.gz"
        source.write_bytes(b"\x1f\x8b")

        image = decompress_image(source, tmp_path / "mypi.img")

        assert image.stat().st_size == 512
        assert run.call_args[0][0] == ["/usr/sbin/pigz", "-dc", str(source)]

    def test_decompress_failure(self, mocker, tmp_path):
        mocker.patch(
            "subprocess.run",
            return_value=subprocess.CompletedProcess([], 1, None, b"gzip: unexpected end of file"),
        )

        with pytest.raises(ArchiveError, match="unexpected end of file"):
            decompress_image(tmp_path / "x.gz", tmp_path / "x.img")

    def test_empty_result(self, mocker, tmp_path):
        mocker.patch("subprocess.run", return_value=subprocess.CompletedProcess([], 0, None, b""))

        with pytest.raises(ArchiveError, match="empty"):
            decompress_image(tmp_path / "x.gz", tmp_path / "x.img")

    def test_no_tool(self, mock_which, tmp_path):
        mock_which.side_effect = lambda name: None

        with pytest.raises(ArchiveError, match="Neither pigz nor gzip"):
            decompress_image(tmp_path / "x.gz", tmp_path / "x.img")


class TestArchive:
    def test_remove_stale_archives(self, tmp_path):
        for name in ("mypi_16GB.zip", "mypi_32GB.zip", "mypi_8GB.gz", "otherpi_16GB.zip"):
            (tmp_path / name).write_bytes(b"x")

        removed = remove_stale_archives(tmp_path, "mypi", ".zip")

        assert sorted(path.name for path in removed) == ["mypi_16GB.zip", "mypi_32GB.zip"]
        assert sorted(path.name for path in tmp_path.iterdir()) == ["mypi_8GB.gz", "otherpi_16GB.zip"]

    def test_pack_replaces_existing_archive(self, mocker, tmp_path):
        archive = tmp_path / "mypi_16GB.zip"
        archive.write_bytes(b"old")

        def fake_zip(command, **kwargs):
            assert not archive.exists()
            archive.write_bytes(b"PK")
            return subprocess.CompletedProcess(command, 0, "", "")

        run = mocker.patch("subprocess.run", side_effect=fake_zip)
        image = tmp_path / "mypi.img"

        assert pack_archive([image], archive) == archive
        assert run.call_args[0][0] == ["/usr/sbin/zip", "-j", str(archive), str(image)]

    def test_pack_failure(self, mocker, tmp_path):
        mocker.patch(
            "subprocess.run",
            return_value=subprocess.CompletedProcess([], 15, "", "zip I/O error: No space left on device"),
        )

        with pytest.raises(ArchiveError, match="No space left"):
            pack_archive([tmp_path / "mypi.img"], tmp_path / "mypi_16GB.zip")
