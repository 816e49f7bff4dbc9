"""Content identifiers and their on-disk locations.

An identifier is the unpadded URL-safe base64 form of a 32 byte BLAKE3
digest, which is always 43 characters long. Objects live at
``root/<id[0:2]>/<id[2:4]>/<id>``.
"""

import base64
import re
from pathlib import Path

DIGEST_SIZE = 32
ID_LENGTH = 43

ID_PATTERN = re.compile(r"[A-Za-z0-9_-]{%d}" % ID_LENGTH)

# Shard the first characters of the id into two directory levels.
SHARD_DEPTH = 2
SHARD_WIDTH = 2


def encode(digest: bytes) -> str:
    """Return the canonical identifier of a 32 byte digest."""
    if len(digest) != DIGEST_SIZE:
        raise ValueError(f"expected a {DIGEST_SIZE} byte digest, got {len(digest)}")
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def is_valid_id(blob_id: str) -> bool:
    """Check that `blob_id` is exactly 43 characters of ``[A-Za-z0-9_-]``."""
    if not isinstance(blob_id, str):
        return False
    return ID_PATTERN.fullmatch(blob_id) is not None


def shard(blob_id: str):
    return [blob_id[i * SHARD_WIDTH:(i + 1) * SHARD_WIDTH] for i in range(SHARD_DEPTH)]


def path_for(root: Path, blob_id: str) -> Path:
    """Return the storage path of `blob_id` under `root`.

    Raises:
        ValueError: If `blob_id` is not a well-formed identifier.
    """
    if not is_valid_id(blob_id):
        raise ValueError(f"invalid blob id: {blob_id!r}")
    return Path(root).joinpath(*shard(blob_id), blob_id)
