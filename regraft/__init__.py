"""regraft - safe git history rewriting.

Rebuilds a range of commits on a disposable branch, keeping trees,
authorship, timestamps and merge topology, signing each rebuilt commit,
and rolling back from a verified backup bundle when a check fails.
"""

__version__ = "1.0.0"
