"""Core modules for regraft."""

from .backup import BackupManager, BackupResult, BackupSnapshot
from .cleanup import RefCleaner
from .conflicts import ConflictResolver, ResolutionOutcome, ResolutionState
from .controller import RegraftController
from .date_ledger import ApplyOutcome, ApplyStatus, DateLedger, DateLedgerEntry
from .errors import (
    ConflictError,
    InfrastructureError,
    InputError,
    RegraftError,
    SignatureError,
    TimestampDriftError,
    TreeMismatchError,
    VerificationError,
)
from .harness import HarnessReport, HarnessState, SafetyHarness
from .inspector import CommitInfo, CommitRange, ReferenceInspector
from .preserve import AtomicPreserve, PreserveHalted, PreserveMap, PreserveMapEntry, PreserveRun
from .reconstruct import ReconstructionResult, TopologyReconstructor
from .signing import SignAndVerify, SigningIdentity, SignResult
from .worktree import WorktreeInfo, WorktreeSynchroniser

__all__ = [
    "ApplyOutcome",
    "ApplyStatus",
    "AtomicPreserve",
    "BackupManager",
    "BackupResult",
    "BackupSnapshot",
    "CommitInfo",
    "CommitRange",
    "ConflictError",
    "ConflictResolver",
    "DateLedger",
    "DateLedgerEntry",
    "HarnessReport",
    "HarnessState",
    "InfrastructureError",
    "InputError",
    "PreserveHalted",
    "PreserveMap",
    "PreserveMapEntry",
    "PreserveRun",
    "ReconstructionResult",
    "ReferenceInspector",
    "RefCleaner",
    "RegraftController",
    "RegraftError",
    "ResolutionOutcome",
    "ResolutionState",
    "SafetyHarness",
    "SignAndVerify",
    "SignResult",
    "SignatureError",
    "SigningIdentity",
    "TimestampDriftError",
    "TopologyReconstructor",
    "TreeMismatchError",
    "VerificationError",
    "WorktreeInfo",
    "WorktreeSynchroniser",
]
