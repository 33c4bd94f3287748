"""
Backup catalog normalizer.

Turns a flat, unordered list of per-file header records into deduplicated
logical backup sets. Striped sets are reassembled from their media family
members; a set with a missing member cannot be restored and is dropped.
"""

import logging
from collections import OrderedDict
from typing import Dict, Iterable, List, Sequence, Tuple

from ..models import BackupHeaderRecord, BackupSetDescriptor, IncompleteStripe, LogMark

logger = logging.getLogger(__name__)


def sort_key(backup_set: BackupSetDescriptor) -> Tuple:
    return (
        backup_set.database_name,
        backup_set.backup_type.sort_order,
        backup_set.first_lsn,
        backup_set.last_lsn,
        backup_set.backup_set_id,
    )


class BackupCatalog:
    """Normalized backup sets plus the sets that had to be dropped.

    Attributes:
        backup_sets: Usable backup sets, sorted by database, type and first LSN
        incomplete_stripes: Sets dropped because a stripe member is missing
    """

    def __init__(
        self,
        backup_sets: Sequence[BackupSetDescriptor],
        incomplete_stripes: Sequence[IncompleteStripe] = (),
    ):
        self.backup_sets: List[BackupSetDescriptor] = sorted(backup_sets, key=sort_key)
        self.incomplete_stripes: List[IncompleteStripe] = list(incomplete_stripes)

    def __len__(self) -> int:
        return len(self.backup_sets)

    def databases(self) -> List[str]:
        """Names of all databases present, in sorted order."""
        names = {s.database_name for s in self.backup_sets}
        names.update(s.database_name for s in self.incomplete_stripes)
        return sorted(names)

    def for_database(self, database_name: str) -> List[BackupSetDescriptor]:
        return [s for s in self.backup_sets if s.database_name == database_name]

    def incomplete_for(self, database_name: str) -> List[IncompleteStripe]:
        return [s for s in self.incomplete_stripes if s.database_name == database_name]


def normalize_headers(records: Iterable[BackupHeaderRecord]) -> BackupCatalog:
    """
    Group header records into logical backup sets.

    Records are grouped by ``(database_name, backup_set_id)``. Repeated scans
    of the same path collapse into one member, and the same set found under
    several source paths is merged (one file per family sequence number,
    lexically smallest path wins). A group only becomes a backup set when
    family members ``1..family_count`` are all present.

    Args:
        records: Per-file header records in any order

    Returns:
        BackupCatalog: Usable backup sets and dropped incomplete stripes
    """
    groups: Dict[Tuple[str, str], List[BackupHeaderRecord]] = OrderedDict()
    for record in records:
        groups.setdefault((record.database_name, record.backup_set_id), []).append(record)

    backup_sets = []
    incomplete = []
    for (database_name, backup_set_id), members in groups.items():
        members = sorted(members, key=lambda r: (r.file.family_sequence_number, r.file.path))
        head = members[0]
        expected = max(r.family_count for r in members)

        by_family = OrderedDict()
        for member in members:
            by_family.setdefault(member.file.family_sequence_number, member)

        if len(members) > len(by_family):
            logger.debug(
                f"Collapsed {len(members) - len(by_family)} duplicate file(s) "
                f"for backup set {backup_set_id} of {database_name}"
            )

        if set(by_family) != set(range(1, expected + 1)):
            logger.warning(
                f"Dropping backup set {backup_set_id} of {database_name}: "
                f"found {len(by_family)} of {expected} media family members"
            )
            incomplete.append(
                IncompleteStripe(
                    database_name=database_name,
                    backup_set_id=backup_set_id,
                    backup_type=head.backup_type,
                    first_lsn=head.first_lsn,
                    last_lsn=head.last_lsn,
                    expected_files=expected,
                    found_files=len([n for n in by_family if 1 <= n <= expected]),
                )
            )
            continue

        marks = {}
        for member in members:
            for mark in member.marks:
                marks.setdefault((mark.name, mark.lsn), mark)

        backup_sets.append(
            BackupSetDescriptor(
                database_name=database_name,
                backup_set_id=backup_set_id,
                backup_type=head.backup_type,
                first_lsn=head.first_lsn,
                last_lsn=head.last_lsn,
                checkpoint_lsn=head.checkpoint_lsn,
                database_backup_lsn=head.database_backup_lsn,
                start_time=head.start_time,
                finish_time=head.finish_time,
                is_copy_only=head.is_copy_only,
                software_version=head.software_version,
                files=tuple(by_family[n].file for n in sorted(by_family)),
                marks=tuple(sorted(marks.values(), key=lambda m: (m.lsn, m.name))),
            )
        )

    catalog = BackupCatalog(backup_sets, incomplete)
    logger.info(
        f"Normalized {len(backup_sets)} backup set(s) "
        f"({len(incomplete)} incomplete stripe(s) dropped)"
    )
    return catalog


def find_marks(
    backup_sets: Iterable[BackupSetDescriptor], name: str, after=None
) -> List[Tuple[BackupSetDescriptor, LogMark]]:
    """Log backups carrying a mark called ``name`` at or after ``after``, by mark LSN."""
    found = {}
    for backup_set in backup_sets:
        for mark in backup_set.marks_named(name):
            if after is not None and mark.mark_time < after:
                continue
            # A mark near a log boundary can show up in two adjacent logs
            key = (mark.lsn, mark.mark_time)
            if key not in found or backup_set.first_lsn < found[key][0].first_lsn:
                found[key] = (backup_set, mark)
    return [found[key] for key in sorted(found)]
