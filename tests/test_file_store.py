"""Unit tests for vault/files.py -- derived filenames and the zip export.

Covers:
- derive_filename() is pure, 8 hex chars + .txt, sensitive to one-char changes
- write/read/remove round trip; overwrite; remove of a missing file
- user ids that would escape the root are rejected
- export_archive(): exact entries, DEFLATE, empty zip for a missing directory,
  early close leaves nothing behind
"""

import hashlib
import io
import re
import secrets
import zipfile

import pytest

from core.errors import NotFound, StorageError, ValidationError
from vault.files import archive_name, derive_filename

USER = "3b241101-e2bb-4255-8caf-4136c566a962"


def _unzip(chunks) -> zipfile.ZipFile:
    return zipfile.ZipFile(io.BytesIO(b"".join(chunks)))


class TestDeriveFilename:
    def test_is_first_8_hex_of_sha256(self):
        expected = hashlib.sha256(b"record-1").hexdigest()[:8] + ".txt"
        assert derive_filename("record-1") == expected

    def test_is_deterministic(self):
        assert derive_filename("abc") == derive_filename("abc")

    def test_one_character_changes_name(self):
        assert derive_filename("record-1") != derive_filename("record-2")

    def test_shape(self):
        assert re.fullmatch(r"[0-9a-f]{8}\.txt", derive_filename("anything"))


def test_archive_name():
    assert archive_name(USER) == f"user_{USER}_files.zip"


class TestReadWrite:
    def test_write_then_read(self, file_store):
        name = file_store.write(USER, "rec-1", "secret")
        assert name == derive_filename("rec-1")
        assert (file_store.root / USER / name).read_text(encoding="utf-8") == "secret"
        assert file_store.read(USER, "rec-1") == "secret"

    def test_write_overwrites(self, file_store):
        file_store.write(USER, "rec-1", "first")
        file_store.write(USER, "rec-1", "second")
        assert file_store.read(USER, "rec-1") == "second"

    def test_unicode_payload(self, file_store):
        file_store.write(USER, "rec-1", "zażółć gęślą jaźń")
        assert file_store.read(USER, "rec-1") == "zażółć gęślą jaźń"

    def test_read_missing_is_not_found(self, file_store):
        with pytest.raises(NotFound):
            file_store.read(USER, "missing")

    def test_remove(self, file_store):
        file_store.write(USER, "rec-1", "secret")
        file_store.remove(USER, "rec-1")
        assert not file_store.path_for(USER, "rec-1").exists()

    def test_remove_missing_is_noop(self, file_store):
        file_store.remove(USER, "never-written")

    def test_ensure_user_dir(self, file_store):
        directory = file_store.ensure_user_dir(USER)
        assert directory.is_dir()
        assert file_store.ensure_user_dir(USER) == directory

    @pytest.mark.parametrize("bad", ["", ".", "..", "../etc", "a/b", "a\\b"])
    def test_path_escape_rejected(self, file_store, bad):
        with pytest.raises(ValidationError):
            file_store.write(bad, "rec-1", "secret")

    def test_write_failure_is_storage_error(self, file_store):
        # A regular file where the user directory should be
        file_store.root.mkdir(parents=True)
        (file_store.root / USER).write_text("in the way")
        with pytest.raises(StorageError):
            file_store.write(USER, "rec-1", "secret")


class TestExportArchive:
    def test_contains_exactly_the_derived_files(self, file_store):
        ids = ["rec-1", "rec-2", "rec-3"]
        for i, record_id in enumerate(ids):
            file_store.write(USER, record_id, f"secret-{i}")

        zf = _unzip(file_store.export_archive(USER))
        assert sorted(zf.namelist()) == sorted(derive_filename(r) for r in ids)
        assert zf.read(derive_filename("rec-2")) == b"secret-1"
        assert all(info.compress_type == zipfile.ZIP_DEFLATED for info in zf.infolist())
        assert zf.testzip() is None

    def test_missing_directory_gives_empty_zip(self, file_store):
        zf = _unzip(file_store.export_archive(USER))
        assert zf.namelist() == []

    def test_large_file_is_streamed_in_chunks(self, file_store):
        payload = secrets.token_hex(160_000)  # 320 KB, poorly compressible
        file_store.write(USER, "big", payload)
        chunks = list(file_store.export_archive(USER))
        assert len(chunks) > 1
        assert _unzip(chunks).read(derive_filename("big")).decode() == payload

    def test_early_close_leaves_nothing_behind(self, file_store):
        file_store.write(USER, "rec-1", "secret")
        before = sorted(p.name for p in file_store.root.rglob("*"))
        stream = file_store.export_archive(USER)
        next(stream)
        stream.close()
        assert sorted(p.name for p in file_store.root.rglob("*")) == before

    def test_other_users_files_not_included(self, file_store):
        file_store.write(USER, "mine", "a")
        file_store.write("someone-else", "theirs", "b")
        zf = _unzip(file_store.export_archive(USER))
        assert zf.namelist() == [derive_filename("mine")]
