from __future__ import annotations

import stat
import sys
from pathlib import Path

import pytest

from regraft.core.signing import SigningIdentity
from regraft.utils.git import GitRunner


SIGNER_NAME = "Test Signer"
SIGNER_EMAIL = "signer@example.com"
BAD_SIGNATURE_MARKER = "[bad-signature]"
BASE_EPOCH = 1_700_000_000

# Stands in for gpg through the repository's gpg.program setting. Signing
# always succeeds; verification reports BADSIG for payloads carrying the
# marker and GOODSIG otherwise.
FAKE_GPG = '''#!{python}
import sys

args = sys.argv[1:]
payload = sys.stdin.buffer.read()

if "--verify" in args:
    sys.stdout.write("[GNUPG:] NEWSIG\\n")
    if {marker!r}.encode() in payload:
        sys.stdout.write("[GNUPG:] BADSIG 0123456789ABCDEF {name} <{email}>\\n")
        sys.exit(1)
    sys.stdout.write("[GNUPG:] GOODSIG 0123456789ABCDEF {name} <{email}>\\n")
    sys.stdout.write("[GNUPG:] TRUST_ULTIMATE 0 pgp\\n")
    sys.exit(0)

sys.stderr.write("[GNUPG:] BEGIN_SIGNING\\n")
sys.stderr.write("[GNUPG:] SIG_CREATED D 1 8 00 1700000000 0123456789ABCDEF\\n")
sys.stdout.write("-----BEGIN PGP SIGNATURE-----\\n\\nZmFrZS1zaWduYXR1cmU=\\n-----END PGP SIGNATURE-----\\n")
'''


@pytest.fixture(autouse=True)
def _isolate_home(monkeypatch: pytest.MonkeyPatch, tmp_path):
    """Prevent developer machine `~/.regraft/config.json` and `~/.gitconfig` from influencing tests."""

    monkeypatch.setenv("HOME", str(tmp_path))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for name in ("GIT_DIR", "GIT_WORK_TREE", "GIT_AUTHOR_DATE", "GIT_COMMITTER_DATE", "REGRAFT_REPO"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def fake_gpg(tmp_path) -> Path:
    """Executable standing in for gpg."""
    path = tmp_path / "bin" / "fake-gpg"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        FAKE_GPG.format(
            python=sys.executable, marker=BAD_SIGNATURE_MARKER, name=SIGNER_NAME, email=SIGNER_EMAIL
        )
    )
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


class Repo:
    """Throw-away repository with a deterministic clock."""

    def __init__(self, path: Path):
        self.path = path
        self.runner = GitRunner(path)
        self.clock = BASE_EPOCH
        self.counter = 0

    def git(self, *args: str, env: dict | None = None) -> str:
        return self.runner.output(list(args), env=env)

    def next_date(self, tz: str = "+0200") -> str:
        self.clock += 3600
        return f"@{self.clock} {tz}"

    def commit(self, message: str, files: dict[str, str | None] | None = None) -> str:
        """Write ``files`` (None deletes) and commit with the next clock tick."""
        if files is None:
            self.counter += 1
            files = {f"file-{self.counter}.txt": f"content {self.counter}\n"}
        for name, content in files.items():
            target = self.path / name
            if content is None:
                target.unlink()
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(content)
        self.git("add", "-A")
        date = self.next_date()
        self.git(
            "commit", "--quiet", "--allow-empty", "-m", message,
            env={"GIT_AUTHOR_DATE": date, "GIT_COMMITTER_DATE": date},
        )
        return self.head()

    def merge(self, branch: str, message: str) -> str:
        date = self.next_date()
        self.git(
            "merge", "--quiet", "--no-ff", "-m", message, branch,
            env={"GIT_AUTHOR_DATE": date, "GIT_COMMITTER_DATE": date},
        )
        return self.head()

    def head(self, ref: str = "HEAD") -> str:
        return self.git("rev-parse", ref)

    def branch(self) -> str:
        return self.git("symbolic-ref", "--short", "HEAD")

    def parents(self, ref: str = "HEAD") -> list[str]:
        return self.git("rev-list", "--parents", "-n1", ref).split()[1:]


@pytest.fixture
def repo(tmp_path, fake_gpg) -> Repo:
    """Repository on ``main`` with one root commit and the fake signer configured."""
    path = tmp_path / "repo"
    path.mkdir()
    r = Repo(path)
    r.git("init", "--quiet")
    r.git("symbolic-ref", "HEAD", "refs/heads/main")
    r.git("config", "user.name", SIGNER_NAME)
    r.git("config", "user.email", SIGNER_EMAIL)
    r.git("config", "gpg.program", str(fake_gpg))
    r.git("config", "commit.gpgsign", "false")
    r.root = r.commit("root", {"README.md": "# repo\n"})
    return r


@pytest.fixture
def identity(fake_gpg) -> SigningIdentity:
    return SigningIdentity(name=SIGNER_NAME, email=SIGNER_EMAIL, program=str(fake_gpg))


@pytest.fixture
def linear_repo(repo) -> Repo:
    """Root commit plus three linear commits: ``repo.commits``."""
    repo.commits = [repo.commit(f"change {n}") for n in range(1, 4)]
    return repo


@pytest.fixture
def merge_repo(repo) -> Repo:
    """Root, then main gets ``m1`` and a feature branch ``f1`` merged back in."""
    repo.git("checkout", "--quiet", "-b", "feature")
    repo.f1 = repo.commit("feature work", {"feature.txt": "feature\n"})
    repo.git("checkout", "--quiet", "main")
    repo.m1 = repo.commit("main work", {"main.txt": "main\n"})
    repo.merge_commit = repo.merge("feature", "Merge feature")
    return repo
