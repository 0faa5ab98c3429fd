"""Tests for loopback block device sessions."""

import pytest

from conftest import ROOT_START, completed
from ssh_imager.domain.models import LoopbackAttachment
from ssh_imager.exceptions import AttachError, DetachError
from ssh_imager.storage import loopback


class TestAttach:
    def test_attach_returns_device(self, mock_subprocess_run, fake_image):
        mock_subprocess_run.return_value = completed(stdout="/dev/loop3\n")

        attachment = loopback.attach(fake_image, ROOT_START)

        assert attachment.device == "/dev/loop3"
        assert attachment.offset == ROOT_START
        assert attachment.attached
        assert loopback.active_attachments() == [attachment]
        command = mock_subprocess_run.call_args[0][0]
        assert command == [
            "sudo",
            "/usr/sbin/losetup",
            "-f",
            "--show",
            "-o",
            str(ROOT_START),
            str(fake_image),
        ]

    def test_no_sudo_when_disabled(self, mock_subprocess_run, fake_image, default_settings):
        default_settings.values["use_sudo"] = False
        mock_subprocess_run.return_value = completed(stdout="/dev/loop0\n")

        loopback.attach(fake_image, 0)

        assert mock_subprocess_run.call_args[0][0][0] == "/usr/sbin/losetup"

    def test_offset_outside_image(self, mock_subprocess_run, fake_image):
        with pytest.raises(AttachError, match="offset outside image"):
            loopback.attach(fake_image, fake_image.stat().st_size)
        mock_subprocess_run.assert_not_called()

    def test_missing_image(self, mock_subprocess_run, tmp_path):
        with pytest.raises(AttachError):
            loopback.attach(tmp_path / "nope.img", 0)

    def test_no_free_device(self, mock_subprocess_run, fake_image):
        mock_subprocess_run.return_value = completed(
            returncode=1, stderr="losetup: cannot find an unused loop device"
        )

        with pytest.raises(AttachError, match="unused loop device"):
            loopback.attach(fake_image, ROOT_START)
        assert loopback.active_attachments() == []


class TestDetach:
    def test_detach_twice_is_same_as_once(self, mock_subprocess_run, fake_image):
        mock_subprocess_run.return_value = completed(stdout="/dev/loop0\n")
        attachment = loopback.attach(fake_image, ROOT_START)
        mock_subprocess_run.reset_mock()
        mock_subprocess_run.return_value = completed()

        loopback.detach(attachment)
        loopback.detach(attachment)

        assert mock_subprocess_run.call_count == 1
        assert not attachment.attached
        assert loopback.active_attachments() == []

    def test_detach_none_is_noop(self, mock_subprocess_run):
        loopback.detach(None)
        mock_subprocess_run.assert_not_called()

    def test_failed_detach_of_released_device_is_ignored(self, mock_subprocess_run, fake_image):
        attachment = LoopbackAttachment("/dev/loop0", fake_image, 0)
        mock_subprocess_run.side_effect = [
            completed(returncode=1, stderr="No such device or address"),
            completed(returncode=1),
        ]

        loopback.detach(attachment)

        assert not attachment.attached

    def test_device_still_attached_raises(self, mock_subprocess_run, fake_image):
        attachment = LoopbackAttachment("/dev/loop0", fake_image, 0)
        mock_subprocess_run.side_effect = [
            completed(returncode=1, stderr="device busy"),
            completed(returncode=0, stdout="/dev/loop0: []: (mypi.img)"),
        ]

        with pytest.raises(DetachError, match="device busy"):
            loopback.detach(attachment)
        assert attachment.attached

    def test_release_quietly_logs_instead_of_raising(self, mock_subprocess_run, fake_image):
        attachment = LoopbackAttachment("/dev/loop0", fake_image, 0)
        mock_subprocess_run.side_effect = [completed(returncode=1), completed(returncode=0)]

        loopback.release_quietly(attachment)

        assert attachment.attached


class TestLoopDevice:
    def test_detached_on_normal_exit(self, fake_tools, fake_image):
        with loopback.loop_device(fake_image, ROOT_START) as attachment:
            assert fake_tools.attached == {attachment.device: ROOT_START}

        assert fake_tools.attached == {}
        assert not attachment.attached

    def test_detached_when_body_raises(self, fake_tools, fake_image):
        with pytest.raises(RuntimeError):
            with loopback.loop_device(fake_image, ROOT_START):
                raise RuntimeError("boom")

        assert fake_tools.attached == {}
        assert fake_tools.tool_calls("losetup")[-1] == ["losetup", "-d", "/dev/loop0"]

    def test_early_detach_in_body(self, fake_tools, fake_image):
        with loopback.loop_device(fake_image, ROOT_START) as attachment:
            loopback.detach(attachment)

        assert fake_tools.tool_calls("losetup") == [
            ["losetup", "-f", "--show", "-o", str(ROOT_START), str(fake_image)],
            ["losetup", "-d", "/dev/loop0"],
        ]


def test_detach_all_releases_everything(fake_tools, fake_image):
    first = loopback.attach(fake_image, 0)
    second = loopback.attach(fake_image, ROOT_START)

    loopback.detach_all()

    assert not first.attached
    assert not second.attached
    assert loopback.active_attachments() == []
