"""
Data model for restore chain resolution.

Header rows coming out of SQL Server are loosely-typed dictionaries. They are
mapped into the immutable models below at the reader boundary; everything
past that point works on typed values only.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .exceptions import CatalogError, PlanExecutionError, TargetError


class DeviceType(str, Enum):
    """Backup device kind."""

    DISK = "DISK"
    URL = "URL"

    @classmethod
    def from_path(cls, path: str) -> "DeviceType":
        lowered = path.lower()
        if lowered.startswith("http://") or lowered.startswith("https://"):
            return cls.URL
        return cls.DISK


class BackupType(str, Enum):
    """Logical backup kinds taking part in a restore chain."""

    FULL = "FULL"
    DIFFERENTIAL = "DIFFERENTIAL"
    LOG = "LOG"

    @property
    def sort_order(self) -> int:
        return _BACKUP_TYPE_ORDER[self]

    @classmethod
    def from_code(cls, code: Any) -> "BackupType":
        """Map a RESTORE HEADERONLY code (1/5/2) or an msdb letter (D/I/L)."""
        key = str(code).strip().upper()
        try:
            return _BACKUP_TYPE_CODES[key]
        except KeyError:
            raise CatalogError(f"Unsupported backup type code: {code!r}")


_BACKUP_TYPE_ORDER = {BackupType.FULL: 0, BackupType.DIFFERENTIAL: 1, BackupType.LOG: 2}

_BACKUP_TYPE_CODES = {
    "1": BackupType.FULL,
    "D": BackupType.FULL,
    "FULL": BackupType.FULL,
    "5": BackupType.DIFFERENTIAL,
    "I": BackupType.DIFFERENTIAL,
    "DIFFERENTIAL": BackupType.DIFFERENTIAL,
    "2": BackupType.LOG,
    "L": BackupType.LOG,
    "LOG": BackupType.LOG,
}


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class BackupFileRef(_Frozen):
    """One physical file or URL belonging to a backup set."""

    path: str
    device_type: DeviceType = DeviceType.DISK
    family_sequence_number: int = Field(default=1, ge=1)
    position: int = Field(default=1, ge=1)


class LogMark(_Frozen):
    """A marked transaction recorded inside a log backup."""

    name: str
    lsn: int
    mark_time: datetime
    description: Optional[str] = None


class BackupSetDescriptor(_Frozen):
    """One logical backup operation, possibly striped over several files."""

    database_name: str
    backup_set_id: str
    backup_type: BackupType
    first_lsn: int
    last_lsn: int
    checkpoint_lsn: int = 0
    database_backup_lsn: int = 0
    start_time: datetime
    finish_time: datetime
    is_copy_only: bool = False
    software_version: Optional[str] = None
    files: Tuple[BackupFileRef, ...]
    marks: Tuple[LogMark, ...] = ()

    @field_validator("files")
    @classmethod
    def _files_not_empty(cls, v):
        if not v:
            raise ValueError("A backup set needs at least one file")
        return v

    @model_validator(mode="after")
    def _lsn_order(self):
        if self.first_lsn > self.last_lsn:
            raise ValueError(
                f"first_lsn {self.first_lsn} is greater than last_lsn {self.last_lsn}"
            )
        return self

    def marks_named(self, name: str) -> List[LogMark]:
        return [mark for mark in self.marks if mark.name == name]

    @property
    def label(self) -> str:
        return f"{self.backup_type.value} {self.backup_set_id} [{self.first_lsn}-{self.last_lsn}]"


class BackupHeaderRecord(_Frozen):
    """Header of a single file, as produced by the header reader.

    Several records with the same ``backup_set_id`` make up one striped set;
    ``family_count`` says how many files the set should have.
    """

    database_name: str
    backup_set_id: str
    backup_type: BackupType
    first_lsn: int
    last_lsn: int
    checkpoint_lsn: int = 0
    database_backup_lsn: int = 0
    start_time: datetime
    finish_time: datetime
    is_copy_only: bool = False
    software_version: Optional[str] = None
    file: BackupFileRef
    family_count: int = Field(default=1, ge=1)
    marks: Tuple[LogMark, ...] = ()

    @classmethod
    def from_header_row(
        cls,
        row: Dict[str, Any],
        path: str,
        marks: Tuple[LogMark, ...] = (),
    ) -> "BackupHeaderRecord":
        """Map a merged RESTORE HEADERONLY / LABELONLY row into a record.

        Args:
            row: Column name to value mapping for one backup set on the media
            path: Path or URL the header was read from
            marks: Marked transactions found for the set, if any

        Returns:
            BackupHeaderRecord: Typed record

        Raises:
            CatalogError: If a required column is missing or invalid
        """
        try:
            version = None
            if row.get("SoftwareVersionMajor") is not None:
                version = "{}.{}.{}".format(
                    row.get("SoftwareVersionMajor"),
                    row.get("SoftwareVersionMinor", 0),
                    row.get("SoftwareVersionBuild", 0),
                )
            return cls(
                database_name=row["DatabaseName"],
                backup_set_id=str(row["BackupSetGUID"]).lower(),
                backup_type=BackupType.from_code(row["BackupType"]),
                first_lsn=int(row["FirstLSN"]),
                last_lsn=int(row["LastLSN"]),
                checkpoint_lsn=int(row.get("CheckpointLSN") or 0),
                database_backup_lsn=int(row.get("DatabaseBackupLSN") or 0),
                start_time=row["BackupStartDate"],
                finish_time=row["BackupFinishDate"],
                is_copy_only=bool(row.get("IsCopyOnly", False)),
                software_version=version,
                file=BackupFileRef(
                    path=path,
                    device_type=DeviceType.from_path(path),
                    family_sequence_number=int(row.get("FamilySequenceNumber") or 1),
                    position=int(row.get("Position") or 1),
                ),
                family_count=int(row.get("FamilyCount") or 1),
                marks=marks,
            )
        except KeyError as e:
            raise CatalogError(f"Backup header is missing column {e}", context={"path": path})
        except (TypeError, ValueError) as e:
            raise CatalogError(f"Invalid backup header: {e}", context={"path": path})


class TargetKind(str, Enum):
    LATEST = "LATEST"
    POINT_IN_TIME = "POINT_IN_TIME"
    NAMED_MARK = "NAMED_MARK"


class MarkTarget(_Frozen):
    """Stop at (or just before) a named marked transaction."""

    name: str
    stop_before: bool = False
    after: Optional[datetime] = None

    @field_validator("after")
    @classmethod
    def _after_is_naive(cls, v):
        return _server_local(v)


class RestoreTarget(_Frozen):
    """The caller's recovery goal for one database."""

    database_name: Optional[str] = None
    kind: TargetKind = TargetKind.LATEST
    point_in_time: Optional[datetime] = None
    mark: Optional[MarkTarget] = None
    ignore_differentials: bool = False
    ignore_logs: bool = False

    @field_validator("point_in_time")
    @classmethod
    def _point_is_naive(cls, v):
        return _server_local(v)

    @model_validator(mode="after")
    def _one_target(self):
        if self.kind == TargetKind.POINT_IN_TIME:
            if self.point_in_time is None or self.mark is not None:
                raise ValueError("A point-in-time target needs point_in_time and no mark")
        elif self.kind == TargetKind.NAMED_MARK:
            if self.mark is None or self.point_in_time is not None:
                raise ValueError("A named-mark target needs a mark and no point_in_time")
        elif self.point_in_time is not None or self.mark is not None:
            raise ValueError("A latest target takes neither point_in_time nor mark")
        return self

    @classmethod
    def latest(cls, database_name: Optional[str] = None, **flags) -> "RestoreTarget":
        return cls(database_name=database_name, kind=TargetKind.LATEST, **flags)

    @classmethod
    def at_time(
        cls, point_in_time: datetime, database_name: Optional[str] = None, **flags
    ) -> "RestoreTarget":
        return cls(
            database_name=database_name,
            kind=TargetKind.POINT_IN_TIME,
            point_in_time=point_in_time,
            **flags,
        )

    @classmethod
    def at_mark(
        cls,
        name: str,
        database_name: Optional[str] = None,
        stop_before: bool = False,
        after: Optional[datetime] = None,
        **flags,
    ) -> "RestoreTarget":
        return cls(
            database_name=database_name,
            kind=TargetKind.NAMED_MARK,
            mark=MarkTarget(name=name, stop_before=stop_before, after=after),
            **flags,
        )

    @classmethod
    def from_options(cls, options: Dict[str, Any]) -> "RestoreTarget":
        """Parse free-form caller options into a target.

        Recognized keys: ``database_name``, ``point_in_time``, ``stop_at_mark``,
        ``stop_before_mark``, ``stop_after_date``, ``ignore_differentials``,
        ``ignore_logs``. With neither a time nor a mark the target is latest.

        Raises:
            TargetError: If the options are contradictory or unparsable
        """
        flags = {
            "database_name": options.get("database_name"),
            "ignore_differentials": options.get("ignore_differentials") or False,
            "ignore_logs": options.get("ignore_logs") or False,
        }
        point = options.get("point_in_time")
        at_mark = options.get("stop_at_mark")
        before_mark = options.get("stop_before_mark")

        chosen = [key for key, value in (
            ("point_in_time", point),
            ("stop_at_mark", at_mark),
            ("stop_before_mark", before_mark),
        ) if value]
        if len(chosen) > 1:
            raise TargetError(f"Only one of {', '.join(chosen)} may be given")

        try:
            if point:
                return cls.at_time(_parse_datetime(point), **flags)
            if at_mark or before_mark:
                after = options.get("stop_after_date")
                return cls.at_mark(
                    at_mark or before_mark,
                    stop_before=bool(before_mark),
                    after=_parse_datetime(after) if after else None,
                    **flags,
                )
            return cls.latest(**flags)
        except ValueError as e:
            raise TargetError(f"Invalid restore target: {e}", database_name=flags["database_name"])


def _parse_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _server_local(value: Optional[datetime]) -> Optional[datetime]:
    # Backup header times are the server's wall clock without an offset
    if value is not None and value.utcoffset() is not None:
        raise ValueError(
            f"{value.isoformat()} carries a UTC offset; give the time in the server's local time without one"
        )
    return value


class RestoreMode(str, Enum):
    """State of a database that is part way through a restore."""

    RESTORING = "RESTORING"
    STANDBY = "STANDBY"


class ContinuationState(_Frozen):
    database_name: str
    already_applied_last_lsn: int
    current_mode: RestoreMode = RestoreMode.RESTORING


class RecoveryMode(str, Enum):
    NORECOVERY = "NORECOVERY"
    RECOVERY = "RECOVERY"
    STANDBY = "STANDBY"


class EndState(_Frozen):
    """State the database should be left in after the last step."""

    mode: RecoveryMode = RecoveryMode.RECOVERY
    standby_file: Optional[str] = None

    @model_validator(mode="after")
    def _standby_needs_file(self):
        if self.mode == RecoveryMode.STANDBY and not self.standby_file:
            raise ValueError("STANDBY end state requires a standby_file")
        if self.mode != RecoveryMode.STANDBY and self.standby_file:
            raise ValueError("standby_file is only valid with STANDBY")
        return self

    @classmethod
    def parse(cls, mode: str, standby_file: Optional[str] = None) -> "EndState":
        try:
            return cls(mode=RecoveryMode(mode.upper()), standby_file=standby_file)
        except ValueError as e:
            raise TargetError(f"Invalid end state {mode!r}: {e}")


class PlanAction(str, Enum):
    RESTORE = "RESTORE"
    LEAVE_STANDBY = "LEAVE_STANDBY"
    FINALIZE = "FINALIZE"


class RestorePlanStep(_Frozen):
    """One ordered restore action handed to the executor."""

    index: int
    database_name: str
    action: PlanAction = PlanAction.RESTORE
    backup_set: Optional[BackupSetDescriptor] = None
    recovery_mode: RecoveryMode = RecoveryMode.NORECOVERY
    standby_file: Optional[str] = None
    stop_at: Optional[datetime] = None
    stop_at_mark: Optional[MarkTarget] = None

    @model_validator(mode="after")
    def _backup_set_matches_action(self):
        if (self.action == PlanAction.RESTORE) != (self.backup_set is not None):
            raise ValueError("Only RESTORE steps carry a backup set")
        return self


class RejectCode(str, Enum):
    NO_USABLE_FULL = "NoUsableFull"
    INCOMPLETE_STRIPE = "IncompleteStripe"
    CHAIN_GAP = "ChainGap"
    AMBIGUOUS_MULTI_DATABASE = "AmbiguousMultiDatabase"
    TARGET_UNREACHABLE = "TargetUnreachable"
    MARK_NOT_FOUND = "MarkNotFound"
    MISSING_BACKUP_FILE = "MissingBackupFile"
    DUPLICATE_BACKUP_SET = "DuplicateBackupSet"
    LSN_REGRESSION = "LsnRegression"


class RejectReason(_Frozen):
    code: RejectCode
    message: str
    at_lsn: Optional[int] = None
    backup_set_id: Optional[str] = None
    path: Optional[str] = None


class IncompleteStripe(_Frozen):
    """A backup set dropped because some of its media family is missing."""

    database_name: str
    backup_set_id: str
    backup_type: BackupType
    first_lsn: int
    last_lsn: int
    expected_files: int
    found_files: int


class ChainResult(_Frozen):
    database_name: Optional[str] = None
    is_verified: bool
    plan: Tuple[RestorePlanStep, ...] = ()
    reject_reason: Optional[RejectReason] = None
    warnings: Tuple[str, ...] = ()
    target_lsn: Optional[int] = None

    @property
    def backup_set_ids(self) -> List[str]:
        return [step.backup_set.backup_set_id for step in self.plan if step.backup_set]


class StepOutcome(_Frozen):
    success: bool
    error: Optional[str] = None


class StepFailure(_Frozen):
    step_index: int
    error: str


class PlanExecutionReport(_Frozen):
    database_name: str
    completed_steps: int = 0
    total_steps: int = 0
    failure: Optional[StepFailure] = None
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.failure is None and not self.cancelled and self.completed_steps == self.total_steps

    def raise_for_failure(self) -> None:
        """Raise PlanExecutionError if the plan stopped before its last step."""
        if self.failure is not None:
            raise PlanExecutionError(
                f"Restore stopped at step {self.failure.step_index}: {self.failure.error}",
                step_index=self.failure.step_index,
                database_name=self.database_name,
            )
        if self.cancelled:
            raise PlanExecutionError(
                f"Restore cancelled after {self.completed_steps} of {self.total_steps} step(s)",
                step_index=self.completed_steps,
                database_name=self.database_name,
            )
