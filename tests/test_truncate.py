"""Tests for image truncation."""

import pytest

from conftest import completed
from ssh_imager.exceptions import TruncateError
from ssh_imager.storage.truncate import truncate_image


def test_truncates_to_exact_length(fake_tools, fake_image):
    assert truncate_image(fake_image, 682229761) == 682229761
    assert fake_image.stat().st_size == 682229761
    assert fake_tools.tool_calls("truncate") == [
        ["truncate", "-s", "682229761", str(fake_image)]
    ]


def test_rejects_non_positive_length(mock_subprocess_run, fake_image):
    with pytest.raises(TruncateError, match="must be positive"):
        truncate_image(fake_image, 0)
    mock_subprocess_run.assert_not_called()


def test_missing_image(mock_subprocess_run, tmp_path):
    with pytest.raises(TruncateError, match="not a file"):
        truncate_image(tmp_path / "gone.img", 100)


def test_tool_failure(mock_subprocess_run, fake_image):
    mock_subprocess_run.return_value = completed(returncode=1, stderr="Operation not permitted")

    with pytest.raises(TruncateError, match="Operation not permitted") as excinfo:
        truncate_image(fake_image, 100)

    assert excinfo.value.failure_reason == "truncate"


def test_length_mismatch_after_truncate(mock_subprocess_run, fake_image):
    mock_subprocess_run.return_value = completed()

    with pytest.raises(TruncateError, match="after truncation"):
        truncate_image(fake_image, 100)
