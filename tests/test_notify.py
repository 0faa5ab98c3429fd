"""Tests for mailing the run log."""

from datetime import datetime

import pytest

from conftest import completed
from ssh_imager.services.notify import build_mail_command, build_subject, send_log


def test_subject():
    when = datetime(2024, 3, 5, 3, 0)

    assert build_subject("mypi", "/dev/mmcblk0", when=when, host="backuphost") == (
        "mypi /dev/mmcblk0 backup to backuphost status for Tuesday, March 5 2024"
    )


class TestMailCommand:
    def test_pat(self):
        assert build_mail_command("pat", ["a@x.org", "b@x.org"], "subj", "me@x.org") == [
            "patmail.sh", "a@x.org,b@x.org", "subj", "telnet",
        ]

    def test_mail(self):
        assert build_mail_command("mail", ["a@x.org", "b@x.org"], "subj", "me@x.org") == [
            "mail", "-s", "subj", "-a", "From: me@x.org", "a@x.org", "b@x.org",
        ]

    def test_unknown_transport(self):
        with pytest.raises(ValueError):
            build_mail_command("pigeon", ["a@x.org"], "subj", "me@x.org")


class TestSendLog:
    def test_log_on_stdin(self, mock_subprocess_run):
        mock_subprocess_run.return_value = completed()

        assert send_log("line 1\nline 2\n", ["a@x.org"], "subj")

        assert mock_subprocess_run.call_args[0][0][0] == "patmail.sh"
        assert mock_subprocess_run.call_args.kwargs["input"] == "line 1\nline 2\n"

    def test_transport_from_settings(self, mock_subprocess_run, default_settings):
        default_settings.values["mail_transport"] = "mail"
        mock_subprocess_run.return_value = completed()

        send_log("log", ["a@x.org"], "subj")

        assert mock_subprocess_run.call_args[0][0][0] == "mail"

    def test_failure_is_not_raised(self, mock_subprocess_run):
        mock_subprocess_run.return_value = completed(returncode=1, stderr="telnet: connection refused")

        assert send_log("log", ["a@x.org"], "subj") is False

    def test_missing_program(self, mock_subprocess_run, mock_which):
        mock_which.side_effect = lambda name: None

        assert send_log("log", ["a@x.org"], "subj") is False
        mock_subprocess_run.assert_not_called()

    def test_no_recipients(self, mock_subprocess_run):
        assert send_log("log", [], "subj") is False
        mock_subprocess_run.assert_not_called()
