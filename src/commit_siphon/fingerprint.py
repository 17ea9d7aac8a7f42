"""Commit identity hashing for idempotent re-ingestion."""

import hashlib

from commit_siphon.models import Commit

# Hex characters kept from the SHA-256 digest (128 bits)
FINGERPRINT_LENGTH = 32

_SEPARATOR = "\x00"


def commit_fingerprint(commit: Commit) -> str:
    """Compute a stable fingerprint of a commit's identifying fields.

    The digest covers the VCS id, message, author and committer identities,
    both timestamps (ISO 8601 with UTC offset) and the three change
    counters. Deltas are not part of the identity, so the fingerprint does
    not depend on the data-fetch policy.

    Args:
        commit: Commit to fingerprint

    Returns:
        Fixed-width lowercase hex digest
    """
    parts = (
        commit.vcs_id,
        commit.message,
        commit.author.name,
        commit.author.email,
        commit.committer.name,
        commit.committer.email,
        commit.author_date.isoformat(),
        commit.commit_date.isoformat(),
        str(commit.file_changed_count),
        str(commit.insertions_count),
        str(commit.deletions_count),
    )
    canonical = _SEPARATOR.join(parts)
    digest = hashlib.sha256(canonical.encode("utf-8", errors="surrogatepass"))
    return digest.hexdigest()[:FINGERPRINT_LENGTH]
