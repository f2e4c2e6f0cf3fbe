"""Migration files on disk: digests, discovery, and creation."""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime, timezone
from pathlib import Path

logger = logging.getLogger(__name__)

MIGRATION_FILE_PATTERN = re.compile(r"^\d{14}(_.*)?\.sql$", re.IGNORECASE)
NO_TRANSACTION_MARKER = "-- no_transaction"

_CHUNK_SIZE = 64 * 1024


# ---------------------------------------------------------------------------
# Digests
# ---------------------------------------------------------------------------


def digest_bytes(data: bytes) -> str:
    """Return the hex MD5 digest of *data*."""
    return hashlib.md5(data).hexdigest()


def digest_text(text: str) -> str:
    return digest_bytes(text.encode("utf-8"))


def digest_file(path: Path) -> str:
    """Return the hex MD5 digest of the file at *path*, read in chunks."""
    h = hashlib.md5()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_CHUNK_SIZE), b""):
            h.update(chunk)
    return h.hexdigest()


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def is_migration_filename(name: str) -> bool:
    return MIGRATION_FILE_PATTERN.match(name) is not None


def list_file_digests(
    directory: Path, log: logging.Logger | None = None,
) -> dict[str, str]:
    """Map each migration filename in *directory* to its digest.

    Entries are visited in lexicographic order.  Names that do not look
    like migrations are skipped.  A missing directory yields ``{}``.
    """
    log = log or logger
    directory = Path(directory)
    if not directory.is_dir():
        return {}

    digests: dict[str, str] = {}
    for entry in sorted(directory.iterdir(), key=lambda p: p.name):
        if not is_migration_filename(entry.name) or not entry.is_file():
            log.debug("Skipping non-migration file: %s", entry.name)
            continue
        digests[entry.name] = digest_file(entry)
    return digests


def uses_transaction(path: Path) -> bool:
    """Return False when the file's first line is the no-transaction marker."""
    with open(path, encoding="utf-8") as f:
        first_line = f.readline()
    return first_line.strip() != NO_TRANSACTION_MARKER


def read_migration_sql(path: Path) -> str:
    return Path(path).read_text(encoding="utf-8").strip()


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------


def normalize_migration_name(name: str) -> str:
    """Lower-case *name* and collapse anything but ``[a-z0-9_]`` to ``_``."""
    normalized = re.sub(r"[^_a-z0-9]+", "_", name.lower())
    normalized = re.sub(r"_{2,}", "_", normalized)
    return normalized.strip("_")


def current_timestamp(now: datetime | None = None) -> str:
    """Return ``YYYYMMDDHHmmss`` for *now* (default: the current UTC time)."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y%m%d%H%M%S")


def create_migration_file(
    name: str = "",
    directory: Path = Path("migrations"),
    now: datetime | None = None,
) -> Path:
    """Create an empty, timestamped migration file and return its path.

    Two calls in the same second with the same name resolve to the same
    path; the second call truncates the first file.
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)

    normalized = normalize_migration_name(name or "")
    suffix = f"_{normalized}" if normalized else ""
    path = directory / f"{current_timestamp(now)}{suffix}.sql"
    if path.exists():
        logger.warning("Overwriting existing migration file %s", path)
    path.write_text("", encoding="utf-8")
    logger.info("Created migration %s", path)
    return path
