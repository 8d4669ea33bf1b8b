"""Tests for the safety harness."""

import errno
import json

import pytest

from regraft.config.types import RegraftConfig
from regraft.core.backup import BackupManager
from regraft.core.date_ledger import DateLedger
from regraft.core.errors import InputError
from regraft.core.harness import HarnessReport, HarnessState, SafetyHarness
from regraft.core.inspector import CommitRange, ReferenceInspector
from regraft.utils.fs import read_lines

from conftest import BAD_SIGNATURE_MARKER


S = HarnessState


@pytest.fixture
def state_dir(repo):
    return repo.path / ".git" / "regraft"


def make_harness(repo, state_dir, identity, **config):
    return SafetyHarness(
        repo.runner,
        BackupManager(repo.runner, state_dir / "backups"),
        state_dir,
        RegraftConfig(**config),
        identity,
    )


class TestHarnessReport:
    def test_valid_path(self):
        report = HarnessReport("drop", "abc")
        for state in (S.BACKED_UP, S.EXECUTING, S.VERIFIED, S.CLEANED):
            report.advance(state)
        assert report.state == S.CLEANED
        assert report.state.terminal
        assert report.success

    def test_invalid_transition_rejected(self):
        report = HarnessReport("drop", "abc")
        with pytest.raises(ValueError):
            report.advance(S.VERIFIED)

    def test_restored_only_after_failed(self):
        report = HarnessReport("drop", "abc")
        report.advance(S.BACKED_UP)
        report.advance(S.EXECUTING)
        with pytest.raises(ValueError):
            report.advance(S.RESTORED)
        report.advance(S.FAILED)
        report.advance(S.RESTORED)
        assert not report.success

    def test_render_text(self):
        report = HarnessReport("drop", "abc", pre_log=["111 one"], error="boom")
        text = report.render_text()
        assert "Operation: drop abc" in text
        assert "  111 one" in text
        assert "ERROR: boom" in text
        assert text.rstrip().endswith("Outcome: start")


class TestSign:
    def test_three_commits(self, linear_repo, identity, state_dir):
        original = linear_repo.head("main")

        report = make_harness(linear_repo, state_dir, identity).run("sign", linear_repo.root)

        assert report.states == [S.START, S.BACKED_UP, S.EXECUTING, S.VERIFIED, S.CLEANED]
        assert report.success
        assert linear_repo.head("main") == original
        assert linear_repo.branch() == report.temp_branch
        assert linear_repo.head(report.temp_branch) != original
        entries = report.preserve["entries"]
        assert len(entries) == 3
        assert {e["signatureStatus"] for e in entries} == {"G"}
        assert all(c.passed for c in report.checks)
        assert {c.name for c in report.checks} == {"tree-identity", "worktree-clean", "diff-summary"}

    def test_report_written(self, linear_repo, identity, state_dir):
        report = make_harness(linear_repo, state_dir, identity).run("sign", linear_repo.root)

        text_path = state_dir / "reports" / report.report_path.rsplit("/", 1)[-1]
        assert text_path.exists()
        data = json.loads(text_path.with_suffix(".json").read_text())
        assert data["outcome"] == "cleaned"
        assert data["operation"] == "sign"
        assert data["backup"].endswith(".bundle")

    def test_bad_signature_restores_original(self, repo, identity, state_dir):
        repo.commit("first")
        bad = repo.commit(f"second {BAD_SIGNATURE_MARKER}")
        repo.commit("third")
        original = repo.head("main")

        report = make_harness(repo, state_dir, identity).run("sign", repo.root)

        assert report.states[-2:] == [S.FAILED, S.RESTORED]
        assert not report.success
        assert len(report.preserve["entries"]) == 1
        assert len(read_lines(report.preserve["mapPath"])) == 1
        assert bad in report.error
        assert "check=signature" in report.error
        assert report.backup in report.error
        assert repo.head("main") == original
        assert repo.head("HEAD") == original
        assert repo.branch() == "main"
        assert repo.head(report.temp_branch) == original
        assert ReferenceInspector(repo.runner).is_clean()

    def test_missing_identity_rejected_before_mutation(self, linear_repo, state_dir):
        harness = make_harness(linear_repo, state_dir, None)
        with pytest.raises(InputError):
            harness.run("sign", linear_repo.root)
        assert linear_repo.branch() == "main"
        assert not (state_dir / "backups").exists()


class TestDrop:
    def test_dry_run_is_simulated(self, linear_repo, identity, state_dir):
        original = linear_repo.head("main")

        report = make_harness(linear_repo, state_dir, identity).run(
            "drop", linear_repo.commits[1], dry_run=True
        )

        assert report.states == [S.START, S.BACKED_UP, S.EXECUTING, S.SIMULATED]
        assert S.RESTORED not in report.states
        assert report.success
        assert report.checks == []
        assert linear_repo.head("main") == original
        assert linear_repo.branch() == "main"
        assert (linear_repo.path / "file-2.txt").exists()
        assert any("DRY-RUN" in note for note in report.notes)

    def test_drop_removes_commit(self, linear_repo, identity, state_dir):
        original = linear_repo.head("main")
        dropped = linear_repo.commits[1]

        report = make_harness(linear_repo, state_dir, identity).run("drop", dropped)

        assert report.state == S.CLEANED
        inspector = ReferenceInspector(linear_repo.runner)
        assert not inspector.is_ancestor(dropped, "HEAD")
        assert not (linear_repo.path / "file-2.txt").exists()
        assert (linear_repo.path / "file-3.txt").exists()
        assert linear_repo.head("main") == original
        assert "file-2.txt" in report.diff_summary
        assert next(c for c in report.checks if c.name == "commit-absent").passed

    def test_drop_with_cleanup_deletes_temp_branch(self, linear_repo, identity, state_dir):
        report = make_harness(linear_repo, state_dir, identity).run(
            "drop", linear_repo.commits[1], cleanup=True
        )

        assert report.state == S.CLEANED
        assert linear_repo.branch() == "main"
        assert not ReferenceInspector(linear_repo.runner).branch_exists(report.temp_branch)

    def test_conflict_left_for_manual_resolution(self, repo, identity, state_dir):
        repo.commit("one", {"story.txt": "one\n"})
        two = repo.commit("two", {"story.txt": "two\n"})
        repo.commit("three", {"story.txt": "three\n"})
        original = repo.head("main")

        report = make_harness(repo, state_dir, identity).run("drop", two)

        assert report.state == S.CONFLICTED
        assert S.RESTORED not in report.states
        assert "check=conflicts" in report.error
        assert ReferenceInspector(repo.runner).branch_exists(report.temp_branch)
        assert ReferenceInspector(repo.runner).pending_operation() == "rebase"
        assert repo.head("main") == original

    def test_conflict_auto_resolved(self, repo, identity, state_dir):
        repo.commit("one", {"story.txt": "one\n"})
        two = repo.commit("two", {"story.txt": "two\n"})
        repo.commit("three", {"story.txt": "three\n"})

        report = make_harness(repo, state_dir, identity).run("drop", two, auto_resolve="theirs")

        assert report.state == S.CLEANED
        assert (repo.path / "story.txt").read_text() == "three\n"
        assert not ReferenceInspector(repo.runner).is_ancestor(two, "HEAD")
        assert any("Auto-resolve (theirs): completed" in note for note in report.notes)

    def test_auto_resolve_from_config(self, repo, identity, state_dir):
        repo.commit("one", {"story.txt": "one\n"})
        two = repo.commit("two", {"story.txt": "two\n"})
        repo.commit("three", {"story.txt": "three\n"})

        report = make_harness(repo, state_dir, identity, auto_resolve="ours").run("drop", two)

        assert report.state == S.CLEANED
        assert (repo.path / "story.txt").read_text() == "one\n"

    def test_drop_with_restored_dates(self, linear_repo, identity, state_dir):
        inspector = ReferenceInspector(linear_repo.runner)
        last = linear_repo.commits[2]
        last_epoch = inspector.author_epoch(last)

        report = make_harness(linear_repo, state_dir, identity).run(
            "drop", linear_repo.commits[1], restore_dates=True
        )

        assert report.state == S.CLEANED
        assert inspector.committer_epoch("HEAD") == last_epoch
        assert inspector.author_epoch("HEAD") == last_epoch
        assert inspector.signature_status("HEAD") == "G"

    def test_restored_dates_follow_each_commit_across_a_merge(self, repo, identity, state_dir):
        repo.git("checkout", "--quiet", "-b", "feature")
        repo.commit("feature one")
        repo.commit("feature two")
        repo.git("checkout", "--quiet", "main")
        dropped = repo.commit("main zero")
        repo.commit("main one")
        repo.commit("main two")
        repo.merge("feature", "Merge feature")
        repo.commit("after merge")
        inspector = ReferenceInspector(repo.runner)
        expected = {
            inspector.read_commit(commit_id).subject: inspector.author_epoch(commit_id)
            for commit_id in inspector.commits_in_range(CommitRange(dropped))
        }

        report = make_harness(repo, state_dir, identity).run("drop", dropped, restore_dates=True)

        assert report.state == S.CLEANED
        rebuilt = inspector.commits_in_range(CommitRange(repo.root))
        assert len(rebuilt) == len(expected) == 6
        for commit_id in rebuilt:
            subject = inspector.read_commit(commit_id).subject
            assert inspector.author_epoch(commit_id) == expected[subject], subject
            assert inspector.committer_epoch(commit_id) == expected[subject], subject
            assert inspector.signature_status(commit_id) == "G"
        assert len(repo.parents("HEAD~1")) == 2
        assert len(DateLedger(next((state_dir / "runs").glob("*.dates")))) == 0

    def test_failed_date_step_restores_backup(self, repo, identity, state_dir):
        first = repo.commit("first")
        repo.commit(f"second {BAD_SIGNATURE_MARKER}")
        repo.commit("third")
        original = repo.head("main")

        report = make_harness(repo, state_dir, identity).run("drop", first, restore_dates=True)

        assert report.states[-2:] == [S.FAILED, S.RESTORED]
        assert "check=rebase" in report.error
        assert repo.head("main") == original
        assert repo.branch() == "main"
        assert ReferenceInspector(repo.runner).pending_operation() is None

    def test_disk_failure_restores_backup(self, linear_repo, identity, state_dir, monkeypatch):
        original = linear_repo.head("main")

        def no_space(*args, **kwargs):
            raise OSError(errno.ENOSPC, "No space left on device")

        monkeypatch.setattr(DateLedger, "capture", no_space)
        report = make_harness(linear_repo, state_dir, identity).run(
            "drop", linear_repo.commits[1], restore_dates=True
        )

        assert report.states == [S.START, S.BACKED_UP, S.EXECUTING, S.FAILED, S.RESTORED]
        assert "No space left on device" in report.error
        assert "check=io" in report.error
        assert linear_repo.head("main") == original
        assert linear_repo.branch() == "main"
        assert ReferenceInspector(linear_repo.runner).pending_operation() is None
        assert (state_dir / "reports" / report.report_path.rsplit("/", 1)[-1]).exists()


class TestInputValidation:
    def test_unknown_operation(self, linear_repo, identity, state_dir):
        with pytest.raises(InputError):
            make_harness(linear_repo, state_dir, identity).run("squash", "HEAD")

    def test_empty_argument(self, linear_repo, identity, state_dir):
        with pytest.raises(InputError):
            make_harness(linear_repo, state_dir, identity).run("drop", "  ")

    def test_dirty_worktree(self, linear_repo, identity, state_dir):
        (linear_repo.path / "file-1.txt").write_text("dirty\n")
        with pytest.raises(InputError) as exc:
            make_harness(linear_repo, state_dir, identity).run("drop", linear_repo.commits[1])
        assert exc.value.check == "worktree-clean"

    def test_root_commit_cannot_be_dropped(self, linear_repo, identity, state_dir):
        with pytest.raises(InputError) as exc:
            make_harness(linear_repo, state_dir, identity).run("drop", linear_repo.root)
        assert exc.value.check == "drop-target"

    def test_unknown_commit(self, linear_repo, identity, state_dir):
        with pytest.raises(InputError):
            make_harness(linear_repo, state_dir, identity).run("drop", "deadbeef")

    def test_empty_sign_range(self, linear_repo, identity, state_dir):
        with pytest.raises(InputError):
            make_harness(linear_repo, state_dir, identity).run("sign", "HEAD")
