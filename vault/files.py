"""
vault/files.py -- On-disk credential payloads, one file per stored credential.

Layout:
    <root>/<user_id>/<first 8 hex of sha256(record id)>.txt

The file holds the credential's plaintext secret as its entire content. The
name is derived from the record's own opaque id, never from the platform,
login, or secret, so a directory listing reveals nothing about what the files
are for, and two records sharing a secret still get different files.

8 hex characters is 32 bits. Collisions are possible in principle; within a
single user's directory (tens to hundreds of files) the probability is
negligible, and the (user_id, platform, login) uniqueness lives in the
database, not here.

No transactional writes: a crash mid-write can leave a truncated file.
Filesystem errors surface as StorageError with the OSError chained for the
logs; paths never reach the client.

Usage:
    files = CredentialFileStore("/var/lib/securebox/files")
    name = files.write(user_id, record_id, "hunter2")   # "3f9a0c1e.txt"
    files.read(user_id, record_id)                      # "hunter2"
    files.remove(user_id, record_id)                    # no-op if absent
    for chunk in files.export_archive(user_id): ...
"""

import hashlib
import logging
import zipfile
from pathlib import Path
from typing import Iterator, Union

from core.errors import NotFound, StorageError, ValidationError

logger = logging.getLogger("securebox.vault.files")

_CHUNK_SIZE = 64 * 1024


def derive_filename(opaque_id: str) -> str:
    """Map a record id to its on-disk filename. Pure and deterministic."""
    digest = hashlib.sha256(opaque_id.encode("utf-8")).hexdigest()
    return f"{digest[:8]}.txt"


def archive_name(user_id: str) -> str:
    """Attachment filename for a user's exported archive."""
    return f"user_{user_id}_files.zip"


class _ChunkSink:
    """Write-only, unseekable file object that buffers zip output until drained.

    zipfile detects the missing tell()/seek() and switches to data-descriptor
    mode, so entries are written strictly front to back and can be handed to
    the client as they are produced.
    """

    def __init__(self) -> None:
        self._chunks: list[bytes] = []

    def write(self, data) -> int:
        self._chunks.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def close(self) -> None:
        pass

    def drain(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks.clear()
        return data


class CredentialFileStore:
    def __init__(self, root: Union[str, Path]) -> None:
        self.root = Path(root)

    def _user_dir(self, user_id: str) -> Path:
        # user ids are UUIDs; anything that is not a single plain path
        # component would escape the root.
        if not user_id or user_id in (".", "..") or Path(user_id).name != user_id or "\\" in user_id:
            raise ValidationError("Invalid user id.")
        return self.root / user_id

    def path_for(self, user_id: str, opaque_id: str) -> Path:
        return self._user_dir(user_id) / derive_filename(opaque_id)

    def ensure_user_dir(self, user_id: str) -> Path:
        directory = self._user_dir(user_id)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error("Could not create directory for user %s: %s", user_id, e)
            raise StorageError() from e
        return directory

    def write(self, user_id: str, opaque_id: str, payload: str) -> str:
        """Write payload as the whole content of the derived file. Returns the filename."""
        self.ensure_user_dir(user_id)
        path = self.path_for(user_id, opaque_id)
        try:
            path.write_text(payload, encoding="utf-8")
        except OSError as e:
            logger.error("Could not write credential file for user %s: %s", user_id, e)
            raise StorageError() from e
        return path.name

    def read(self, user_id: str, opaque_id: str) -> str:
        path = self.path_for(user_id, opaque_id)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise NotFound("Credential file not found.") from e
        except OSError as e:
            logger.error("Could not read credential file for user %s: %s", user_id, e)
            raise StorageError() from e

    def remove(self, user_id: str, opaque_id: str) -> None:
        """Delete the derived file. Absent files are not an error."""
        path = self.path_for(user_id, opaque_id)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.error("Could not delete credential file for user %s: %s", user_id, e)
            raise StorageError() from e

    def export_archive(self, user_id: str) -> Iterator[bytes]:
        """Yield a zip of the user's directory, chunk by chunk.

        DEFLATE at level 9. The archive is never held in memory or on disk as
        a whole: at most one read chunk of compressed output is buffered
        between yields. If the consumer stops early (client disconnect), the
        generator is closed and nothing is left behind -- the export only
        reads existing files. A user without a directory gets an empty zip.
        """
        directory = self._user_dir(user_id)
        sink = _ChunkSink()
        try:
            with zipfile.ZipFile(sink, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as zf:
                if directory.is_dir():
                    for path in sorted(p for p in directory.iterdir() if p.is_file()):
                        with path.open("rb") as src, zf.open(path.name, "w") as dest:
                            while True:
                                chunk = src.read(_CHUNK_SIZE)
                                if not chunk:
                                    break
                                dest.write(chunk)
                                data = sink.drain()
                                if data:
                                    yield data
                        data = sink.drain()
                        if data:
                            yield data
        except OSError as e:
            logger.error("Archive export failed for user %s: %s", user_id, e)
            raise StorageError() from e
        # Central directory, written by ZipFile.close()
        tail = sink.drain()
        if tail:
            yield tail
