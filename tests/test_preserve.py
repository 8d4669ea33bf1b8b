"""Tests for the atomic preserve orchestrator."""

import pytest

from regraft.config.types import ReconstructMode
from regraft.core.errors import InputError
from regraft.core.inspector import CommitRange, ReferenceInspector
from regraft.core.preserve import AtomicPreserve, PreserveHalted, PreserveMap, PreserveMapEntry
from regraft.utils.dates import to_epoch
from regraft.utils.fs import read_lines, write_lines

from conftest import BAD_SIGNATURE_MARKER


@pytest.fixture
def run_dir(tmp_path):
    return tmp_path / "runs"


class TestPreserveMapEntry:
    def test_line_without_override(self):
        entry = PreserveMapEntry("a" * 40, "b" * 40, "2024-01-01T00:00:00+00:00")
        assert entry.to_line() == f"{'a' * 40}|{'b' * 40}|2024-01-01T00:00:00+00:00"
        assert PreserveMapEntry.from_line(entry.to_line()) == entry

    def test_line_with_override_status(self):
        entry = PreserveMapEntry("a", "b", "2024-01-01T00:00:00+00:00", "B")
        assert entry.to_line().endswith("|sig:B")
        assert PreserveMapEntry.from_line(entry.to_line()).signature_status == "B"

    def test_malformed(self, tmp_path):
        path = tmp_path / "bad.map"
        write_lines(path, ["only|two"])
        with pytest.raises(InputError):
            PreserveMap(path).load()


class TestAtomicPreserve:
    def test_three_linear_commits(self, linear_repo, identity, run_dir):
        inspector = ReferenceInspector(linear_repo.runner)
        original_tip = linear_repo.head("main")

        run = AtomicPreserve(linear_repo.runner, identity, run_dir).run(CommitRange(linear_repo.root))

        assert len(run.entries) == 3
        assert all(e.signature_status == "G" for e in run.entries)
        assert [e.original_id for e in run.entries] == linear_repo.commits
        assert run.tip != original_tip
        assert linear_repo.head("main") == original_tip
        assert linear_repo.head(run.branch) == run.tip
        assert linear_repo.branch() == run.branch
        assert inspector.tree_of(run.tip) == inspector.tree_of(original_tip)

        for entry in run.entries:
            assert inspector.signature_status(entry.current_id) == "G"
            assert inspector.author_epoch(entry.current_id) == inspector.author_epoch(entry.original_id)
            assert inspector.committer_epoch(entry.current_id) == to_epoch(entry.timestamp)

        lines = read_lines(run.map_path)
        assert lines == [e.to_line() for e in run.entries]
        assert run.ledger_path.exists()
        log = read_lines(run.log_path)
        assert log[0].startswith("[atomic] start")
        assert log[-1].startswith("[atomic] done")

    def test_merge_keeps_two_signed_parents(self, merge_repo, identity, run_dir):
        run = AtomicPreserve(merge_repo.runner, identity, run_dir).run(
            CommitRange(merge_repo.root), ReconstructMode.PRESERVE, branch="signed"
        )

        mapping = {e.original_id: e.current_id for e in run.entries}
        assert merge_repo.parents(run.tip) == [mapping[merge_repo.m1], mapping[merge_repo.f1]]
        assert run.branch == "signed"

    def test_linearise_gives_single_parent_chain(self, merge_repo, identity, run_dir):
        inspector = ReferenceInspector(merge_repo.runner)

        run = AtomicPreserve(merge_repo.runner, identity, run_dir).run(
            CommitRange(merge_repo.root), ReconstructMode.LINEARISE, branch="flat"
        )

        assert [e.original_id for e in run.entries] == inspector.commits_in_range(CommitRange(merge_repo.root))
        previous = merge_repo.root
        for entry in run.entries:
            assert merge_repo.parents(entry.current_id) == [previous]
            assert inspector.signature_status(entry.current_id) == "G"
            assert inspector.tree_of(entry.current_id) == inspector.tree_of(entry.original_id)
            previous = entry.current_id
        assert run.tip == previous == merge_repo.head("flat")
        assert inspector.tree_of(run.tip) == inspector.tree_of(merge_repo.merge_commit)
        assert merge_repo.head("main") == merge_repo.merge_commit

    def test_halts_at_bad_signature(self, repo, identity, run_dir):
        first = repo.commit("first")
        bad = repo.commit(f"second {BAD_SIGNATURE_MARKER}")
        repo.commit("third")

        with pytest.raises(PreserveHalted) as exc:
            AtomicPreserve(repo.runner, identity, run_dir).run(CommitRange(repo.root))

        halted = exc.value
        assert halted.commit == bad
        assert halted.check == "signature"
        assert halted.kind == "verification"
        assert [e.original_id for e in halted.run.entries] == [first]
        assert len(read_lines(halted.run.map_path)) == 1
        assert any("HALT" in line for line in read_lines(halted.run.log_path))

    def test_override_records_status(self, repo, identity, run_dir):
        repo.commit(f"only {BAD_SIGNATURE_MARKER}")

        run = AtomicPreserve(repo.runner, identity, run_dir, allow_unsigned=True).run(
            CommitRange(repo.root)
        )

        assert [e.signature_status for e in run.entries] == ["B"]
        assert read_lines(run.map_path)[0].endswith("|sig:B")
        assert len(run.overridden) == 1

    def test_resume_continues_after_last_entry(self, linear_repo, identity, run_dir):
        preserve = AtomicPreserve(linear_repo.runner, identity, run_dir)
        full = preserve.run(CommitRange(linear_repo.root), branch="full")

        write_lines(full.map_path, read_lines(full.map_path)[:1])
        linear_repo.git("checkout", "--quiet", "main")

        resumed = preserve.run(CommitRange(linear_repo.root), branch="resumed", resume_map=full.map_path)

        assert len(resumed.entries) == 3
        assert resumed.entries[0] == full.entries[0]
        assert resumed.tip == full.tip
        assert len(read_lines(full.map_path)) == 3

    def test_resume_missing_map(self, linear_repo, identity, run_dir, tmp_path):
        with pytest.raises(InputError):
            AtomicPreserve(linear_repo.runner, identity, run_dir).run(
                CommitRange(linear_repo.root), resume_map=tmp_path / "missing.map"
            )

    def test_empty_range(self, linear_repo, identity, run_dir):
        with pytest.raises(InputError):
            AtomicPreserve(linear_repo.runner, identity, run_dir).run(CommitRange("HEAD"))
