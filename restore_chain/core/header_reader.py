"""
Backup header reader.

Reads the media label and backup headers of backup files through SQL Server
(``RESTORE LABELONLY`` / ``RESTORE HEADERONLY``) and maps the rows into typed
header records. Scanning many files runs on a small bounded thread pool;
SQL Server serializes header reads internally, so more workers do not help.
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pymssql

from ..exceptions import CatalogError, HeaderReadError
from ..models import BackupFileRef, BackupHeaderRecord, DeviceType, LogMark

logger = logging.getLogger(__name__)

MAX_SCAN_WORKERS = 10

# RESTORE HEADERONLY BackupType codes for database full, log and differential
SUPPORTED_BACKUP_TYPES = {1, 2, 5}

MARKS_QUERY = (
    "SELECT mark_name, lsn, mark_time, description "
    "FROM msdb.dbo.logmarkhistory "
    "WHERE database_name = %s AND lsn >= %s AND lsn < %s "
    "ORDER BY lsn"
)


def _device(path: str) -> str:
    return DeviceType.from_path(path).value


class HeaderReader:
    """Reads backup headers through a SQL Server instance.

    Attributes:
        connection_factory: Zero-argument callable returning a pymssql connection
        read_marks: Load marked transactions of log backups from msdb
        check_version: Reject backups written by a newer SQL Server
    """

    def __init__(
        self,
        connection_factory: Callable,
        read_marks: bool = True,
        check_version: bool = True,
    ):
        self.connection_factory = connection_factory
        self.read_marks = read_marks
        self.check_version = check_version
        self._server_major: Optional[int] = None

    def read(self, file_ref: Union[BackupFileRef, str]) -> List[BackupHeaderRecord]:
        """
        Read every backup set header stored in one file.

        Args:
            file_ref: File reference or path/URL of the backup file

        Returns:
            List[BackupHeaderRecord]: One record per full, differential or
            log backup set on the media

        Raises:
            HeaderReadError: UNREADABLE when SQL Server cannot read the file,
                UNSUPPORTED_VERSION when it was written by a newer server
        """
        path = file_ref.path if isinstance(file_ref, BackupFileRef) else file_ref
        device = _device(path)
        conn = None
        cursor = None
        try:
            conn = self.connection_factory()
            cursor = conn.cursor(as_dict=True)

            cursor.execute(f"RESTORE LABELONLY FROM {device} = %s", (path,))
            label = cursor.fetchone() or {}

            cursor.execute(f"RESTORE HEADERONLY FROM {device} = %s", (path,))
            rows = cursor.fetchall()
            if not rows:
                raise HeaderReadError("No backup sets found on media", path)

            if self.check_version:
                self._check_version(cursor, rows, path)

            records = []
            for row in rows:
                if int(row.get("BackupType") or 0) not in SUPPORTED_BACKUP_TYPES:
                    logger.debug(
                        f"Skipping backup set type {row.get('BackupType')} at position "
                        f"{row.get('Position')} in {path}"
                    )
                    continue
                merged = dict(row)
                merged["FamilyCount"] = label.get("FamilyCount", 1)
                merged["FamilySequenceNumber"] = label.get("FamilySequenceNumber", 1)
                marks = self._read_marks(cursor, row) if self.read_marks else ()
                records.append(BackupHeaderRecord.from_header_row(merged, path, marks))

            logger.debug(f"Read {len(records)} backup set header(s) from {path}")
            return records

        except pymssql.Error as e:
            raise HeaderReadError(f"SQL Server could not read backup header: {str(e)}", path) from e
        except CatalogError as e:
            raise HeaderReadError(e.message, path) from e
        finally:
            if cursor:
                cursor.close()
            if conn:
                conn.close()

    def _check_version(self, cursor, rows: List[dict], path: str) -> None:
        if self._server_major is None:
            cursor.execute("SELECT CAST(SERVERPROPERTY('ProductMajorVersion') AS int) AS major")
            result = cursor.fetchone() or {}
            self._server_major = int(result.get("major") or 0)

        for row in rows:
            major = int(row.get("SoftwareVersionMajor") or 0)
            if self._server_major and major > self._server_major:
                raise HeaderReadError(
                    f"Backup written by SQL Server version {major}, "
                    f"server is version {self._server_major}",
                    path,
                    code=HeaderReadError.UNSUPPORTED_VERSION,
                )

    def _read_marks(self, cursor, row: dict) -> Tuple[LogMark, ...]:
        if int(row.get("BackupType") or 0) != 2:
            return ()
        cursor.execute(
            MARKS_QUERY, (row["DatabaseName"], row["FirstLSN"], row["LastLSN"])
        )
        return tuple(
            LogMark(
                name=mark["mark_name"],
                lsn=int(mark["lsn"]),
                mark_time=mark["mark_time"],
                description=mark.get("description"),
            )
            for mark in cursor.fetchall()
        )


@dataclass
class ScanResult:
    """Headers read from a set of files, plus the files that failed."""

    records: List[BackupHeaderRecord] = field(default_factory=list)
    errors: Dict[str, HeaderReadError] = field(default_factory=dict)


def scan_backup_files(
    paths: Sequence[str],
    reader: HeaderReader,
    max_workers: int = 4,
    progress_callback: Optional[Callable[[str, str, Dict], None]] = None,
) -> ScanResult:
    """
    Read the headers of many backup files on a bounded worker pool.

    An unreadable file is recorded in ``errors`` and does not stop the scan.

    Args:
        paths: Files to read
        reader: Header reader
        max_workers: Concurrent reads, between 1 and 10
        progress_callback: Called with (status, message, data) per file

    Returns:
        ScanResult: Records in path order and per-file errors

    Raises:
        ValueError: If ``max_workers`` is out of range
    """
    if not 1 <= max_workers <= MAX_SCAN_WORKERS:
        raise ValueError(f"max_workers must be between 1 and {MAX_SCAN_WORKERS}")

    progress = progress_callback or (lambda *args: None)
    by_path: Dict[str, List[BackupHeaderRecord]] = {}
    result = ScanResult()

    if not paths:
        return result

    with ThreadPoolExecutor(max_workers=min(max_workers, len(paths))) as pool:
        futures = {pool.submit(reader.read, path): path for path in paths}
        for future in as_completed(futures):
            path = futures[future]
            try:
                by_path[path] = future.result()
                progress("processing", f"Read header of {os.path.basename(path)}", {"file": path})
            except HeaderReadError as e:
                logger.warning(f"Skipping {path}: {e}")
                result.errors[path] = e
                progress("failed", f"Could not read {os.path.basename(path)}", {"file": path, "code": e.code})

    for path in sorted(by_path):
        result.records.extend(by_path[path])

    logger.info(
        f"Scanned {len(paths)} file(s): {len(result.records)} header(s), {len(result.errors)} error(s)"
    )
    return result


def find_backup_files(directory: str, file_patterns: Iterable[str], recursive: bool = True) -> List[str]:
    """
    Find backup files in a directory.

    Args:
        directory: Directory to search
        file_patterns: File extensions to include
        recursive: Descend into subdirectories

    Returns:
        List[str]: Sorted file paths
    """
    if not os.path.isdir(directory):
        logger.warning(f"Backup directory does not exist: {directory}")
        return []

    patterns = tuple(p.lower() for p in file_patterns)
    files = []
    for root, dirs, names in os.walk(directory):
        for filename in names:
            # Skip files still being written
            if any(marker in filename for marker in (".lock", ".tmp", ".part")):
                continue
            if filename.lower().endswith(patterns):
                files.append(os.path.join(root, filename))
        if not recursive:
            dirs.clear()
    return sorted(files)
