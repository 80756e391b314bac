import os

import pytest

from envsync.change_detector import (
    FILE_MISMATCH,
    FILE_MISSING,
    FILE_OK,
    FILE_UNREADABLE,
    detect_change,
    digest,
)

CONTENT = "A=1\nB=2"


def _write(path, text):
    path.write_bytes(text.encode("utf-8"))
    return str(path)


def test_no_change_when_state_and_file_agree(tmp_path):
    path = _write(tmp_path / ".env", CONTENT)
    res = detect_change("api", path, CONTENT, digest(CONTENT))
    assert res.changed is False
    assert res.file_state == FILE_OK
    assert res.digest == digest(CONTENT)


def test_changed_when_secret_source_differs(tmp_path):
    path = _write(tmp_path / ".env", CONTENT)
    new = "A=1\nB=3"
    res = detect_change("api", path, new, digest(CONTENT))
    assert res.changed is True
    assert res.state_changed is True
    assert res.file_state == FILE_MISMATCH
    assert res.digest == digest(new)


def test_unknown_service_counts_as_changed(tmp_path):
    path = _write(tmp_path / ".env", CONTENT)
    res = detect_change("api", path, CONTENT, None)
    assert res.changed is True
    assert res.state_changed is True
    assert res.file_state == FILE_OK


def test_deleted_file_forces_resync(tmp_path):
    res = detect_change("api", str(tmp_path / "missing.env"), CONTENT, digest(CONTENT))
    assert res.changed is True
    assert res.state_changed is False
    assert res.file_state == FILE_MISSING


def test_hand_edited_file_forces_resync(tmp_path):
    path = _write(tmp_path / ".env", CONTENT + "\nEXTRA=1")
    res = detect_change("api", path, CONTENT, digest(CONTENT))
    assert res.changed is True
    assert res.state_changed is False
    assert res.file_state == FILE_MISMATCH


def test_unreadable_file_fails_open(tmp_path):
    # A directory where the file should be makes open() fail with an OSError.
    path = tmp_path / ".env"
    path.mkdir()
    res = detect_change("api", str(path), CONTENT, digest(CONTENT))
    assert res.changed is True
    assert res.file_state == FILE_UNREADABLE


@pytest.mark.parametrize("recorded_matches", [True, False])
@pytest.mark.parametrize("disk", ["same", "other", None])
def test_changed_is_false_only_when_both_agree(tmp_path, recorded_matches, disk):
    path = tmp_path / ".env"
    if disk == "same":
        _write(path, CONTENT)
    elif disk == "other":
        _write(path, "X=9")
    recorded = digest(CONTENT) if recorded_matches else digest("old")
    res = detect_change("api", str(path), CONTENT, recorded)
    assert res.changed is not (recorded_matches and disk == "same")


def test_repeated_calls_are_stable(tmp_path):
    path = _write(tmp_path / ".env", CONTENT)
    first = detect_change("api", path, CONTENT, digest(CONTENT))
    second = detect_change("api", path, CONTENT, digest(CONTENT))
    assert first == second
    assert os.path.getsize(path) == len(CONTENT)
