from pathlib import Path
from unittest.mock import Mock

import pymssql
import pytest

from restore_chain.core.header_reader import HeaderReader, find_backup_files, scan_backup_files
from restore_chain.exceptions import HeaderReadError
from restore_chain.models import BackupType, DeviceType

from factories import at, make_record


def _header_row(backup_type: int = 2, **overrides) -> dict:
    row = {
        "DatabaseName": "Sales",
        "BackupSetGUID": "0A1B2C3D-0000-0000-0000-000000000001",
        "BackupType": backup_type,
        "FirstLSN": 200,
        "LastLSN": 210,
        "CheckpointLSN": 150,
        "DatabaseBackupLSN": 100,
        "BackupStartDate": at(8, 4),
        "BackupFinishDate": at(8, 5),
        "IsCopyOnly": 0,
        "SoftwareVersionMajor": 15,
        "SoftwareVersionMinor": 0,
        "SoftwareVersionBuild": 4153,
        "Position": 1,
    }
    row.update(overrides)
    return row


def _responses(rows, label=None, major=16, marks=()):
    return [
        ("LABELONLY", [label or {"FamilyCount": 1, "FamilySequenceNumber": 1}]),
        ("HEADERONLY", rows),
        ("SERVERPROPERTY", [{"major": major}]),
        ("logmarkhistory", list(marks)),
    ]


def test_read_maps_header_rows(fake_connection) -> None:
    label = {"FamilyCount": 2, "FamilySequenceNumber": 2}
    connection, factory = fake_connection(_responses([_header_row()], label=label))

    records = HeaderReader(factory, read_marks=False).read("/b/log1_2.trn")

    assert len(records) == 1
    record = records[0]
    assert record.backup_type == BackupType.LOG
    assert record.backup_set_id == "0a1b2c3d-0000-0000-0000-000000000001"
    assert (record.first_lsn, record.last_lsn) == (200, 210)
    assert record.file.family_sequence_number == 2
    assert record.family_count == 2
    assert record.software_version == "15.0.4153"
    assert connection.closed


def test_read_loads_marks_for_log_backups(fake_connection) -> None:
    marks = [{"mark_name": "release", "lsn": 205, "mark_time": at(8, 3), "description": "v2"}]
    connection, factory = fake_connection(_responses([_header_row()], marks=marks))

    record = HeaderReader(factory).read("/b/log1.trn")[0]

    assert [(m.name, m.lsn) for m in record.marks] == [("release", 205)]
    mark_query = [params for sql, params in connection.executed if "logmarkhistory" in sql]
    assert mark_query == [("Sales", 200, 210)]


def test_read_skips_unsupported_backup_types(fake_connection) -> None:
    rows = [_header_row(backup_type=1, FirstLSN=100, LastLSN=200), _header_row(backup_type=4, Position=2)]
    _, factory = fake_connection(_responses(rows))

    records = HeaderReader(factory, read_marks=False).read("https://store/c/full.bak")

    assert [r.backup_type for r in records] == [BackupType.FULL]
    assert records[0].file.device_type == DeviceType.URL


def test_read_rejects_newer_server_version(fake_connection) -> None:
    _, factory = fake_connection(_responses([_header_row(SoftwareVersionMajor=17)], major=15))

    with pytest.raises(HeaderReadError) as excinfo:
        HeaderReader(factory).read("/b/log1.trn")

    assert excinfo.value.code == HeaderReadError.UNSUPPORTED_VERSION


def test_read_wraps_sql_errors(fake_connection) -> None:
    _, factory = fake_connection([("LABELONLY", pymssql.OperationalError("not a backup"))])

    with pytest.raises(HeaderReadError) as excinfo:
        HeaderReader(factory).read("/b/notes.bak")

    assert excinfo.value.code == HeaderReadError.UNREADABLE
    assert excinfo.value.path == "/b/notes.bak"


def test_read_wraps_incomplete_rows(fake_connection) -> None:
    row = _header_row()
    del row["FirstLSN"]
    _, factory = fake_connection(_responses([row]))

    with pytest.raises(HeaderReadError):
        HeaderReader(factory, read_marks=False).read("/b/log1.trn")


def test_scan_collects_records_and_errors() -> None:
    good = make_record("l1", BackupType.LOG, 200, 210, at(8, 5), "/b/a.trn")

    def _read(path):
        if path == "/b/bad.trn":
            raise HeaderReadError("unreadable", path)
        return [good]

    reader = Mock()
    reader.read.side_effect = _read

    result = scan_backup_files(["/b/bad.trn", "/b/a.trn"], reader, max_workers=2)

    assert result.records == [good]
    assert list(result.errors) == ["/b/bad.trn"]


def test_scan_rejects_unbounded_pool() -> None:
    with pytest.raises(ValueError):
        scan_backup_files(["/b/a.trn"], Mock(), max_workers=32)


def test_find_backup_files_filters_extensions(tmp_path: Path) -> None:
    (tmp_path / "nested").mkdir()
    for name in ("full.bak", "log.TRN", "notes.txt", "copy.bak.tmp", "nested/diff.dif"):
        (tmp_path / name).write_bytes(b"")

    found = find_backup_files(str(tmp_path), [".bak", ".trn", ".dif"])
    shallow = find_backup_files(str(tmp_path), [".bak", ".trn", ".dif"], recursive=False)

    assert [Path(p).name for p in found] == ["full.bak", "log.TRN", "diff.dif"]
    assert [Path(p).name for p in shallow] == ["full.bak", "log.TRN"]
    assert find_backup_files(str(tmp_path / "missing"), [".bak"]) == []
