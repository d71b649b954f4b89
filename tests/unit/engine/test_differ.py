# SPDX-FileCopyrightText: 2025 Knitli Inc.
# SPDX-FileContributor: Adam Poulemanos <adam@knit.li>
#
# SPDX-License-Identifier: MIT OR Apache-2.0

"""Tests for file-granularity incremental diffing."""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from codeloom.common.paths import normalize_path
from codeloom.core.library import FileIndexRecord
from codeloom.engine.differ import diff_files, file_mtime


pytestmark = [pytest.mark.unit]

T0 = datetime(2025, 1, 1, 12, 0, tzinfo=UTC)


def _record(path: Path, indexed_at: datetime = T0, **kwargs) -> FileIndexRecord:
    return FileIndexRecord(
        relative_path=path.name,
        normalized_path=normalize_path(path),
        last_indexed_at=indexed_at,
        **kwargs,
    )


def _mtimes(mapping: dict[Path, datetime]):
    def lookup(path: Path) -> datetime:
        try:
            return mapping[path]
        except KeyError:
            raise FileNotFoundError(path) from None

    return lookup


class TestDiffFiles:
    def test_example_scenario(self, tmp_path):
        a, b, c = tmp_path / "a.cs", tmp_path / "b.cs", tmp_path / "c.cs"
        records = [_record(a), _record(c)]

        diff = diff_files([a, b], records, mtime=_mtimes({a: T0, b: T0}))

        assert diff.new == [b]
        assert [r.normalized_path for r in diff.deleted] == [normalize_path(c)]
        assert diff.unchanged == [a]
        assert diff.modified == []

    def test_write_after_index_is_modified(self, tmp_path):
        a = tmp_path / "a.py"

        diff = diff_files([a], [_record(a)], mtime=_mtimes({a: T0 + timedelta(seconds=1)}))

        assert diff.modified == [a]
        assert diff.unchanged == []

    def test_equal_timestamps_are_unchanged(self, tmp_path):
        a = tmp_path / "a.py"

        diff = diff_files([a], [_record(a)], mtime=_mtimes({a: T0}))

        assert diff.unchanged == [a]

    def test_degraded_record_is_modified(self, tmp_path):
        a = tmp_path / "a.py"

        diff = diff_files([a], [_record(a, degraded=True)], mtime=_mtimes({a: T0}))

        assert diff.modified == [a]

    def test_buckets_partition_files_and_records(self, tmp_path):
        files = [tmp_path / f"f{i}.py" for i in range(6)]
        later = T0 + timedelta(minutes=5)
        records = [_record(files[0]), _record(files[1]), _record(files[2])]
        records.append(_record(tmp_path / "gone.py"))
        mtimes = {f: T0 for f in files} | {files[1]: later}

        diff = diff_files(files, records, mtime=_mtimes(mtimes))

        buckets = [
            {normalize_path(p) for p in diff.new},
            {normalize_path(p) for p in diff.modified},
            {normalize_path(p) for p in diff.unchanged},
            {r.normalized_path for r in diff.deleted},
        ]
        union = set().union(*buckets)
        assert sum(len(b) for b in buckets) == len(union)
        assert union == {normalize_path(f) for f in files} | {r.normalized_path for r in records}
        assert diff.to_summary() == {"new": 3, "modified": 1, "unchanged": 2, "deleted": 1}
        assert diff.to_process == [*diff.new, *diff.modified]

    def test_records_may_be_passed_as_mapping(self, tmp_path):
        a = tmp_path / "a.py"
        record = _record(a)

        diff = diff_files([a], {record.normalized_path: record}, mtime=_mtimes({a: T0}))

        assert diff.unchanged == [a]
        assert not diff.has_changes

    def test_duplicate_paths_are_counted_once(self, tmp_path):
        a = tmp_path / "a.py"

        diff = diff_files([a, a], [], mtime=_mtimes({a: T0}))

        assert diff.new == [a]

    def test_file_vanishing_during_diff_is_treated_as_deleted(self, tmp_path):
        a = tmp_path / "a.py"

        diff = diff_files([a], [_record(a)], mtime=_mtimes({}))

        assert [r.normalized_path for r in diff.deleted] == [normalize_path(a)]
        assert diff.unchanged == diff.modified == []

    def test_real_mtime_lookup(self, tmp_path):
        a = tmp_path / "a.py"
        a.write_text("x = 1\n")
        indexed = file_mtime(a) - timedelta(hours=1)

        diff = diff_files([a], [_record(a, indexed_at=indexed)])

        assert diff.modified == [a]
