"""Filesystem archive store: one directory per ArticleId."""

import os
import shutil
import threading
import uuid
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from linkharbor.errors import ArchiveRecordNotFound, StorageError
from linkharbor.models import ArchiveAssets, ArchiveRecord
from linkharbor.utils.logging import get_logger

logger = get_logger(__name__)

DATA_FILE = "data.json"
CONTENT_FILE = "content.html"
PDF_FILE = "archive.pdf"
STAGING_DIR = ".staging"
TRASH_DIR = ".trash"


def image_filename(extension: str) -> str:
    return f"image.{extension.lstrip('.')}"


class ArchiveStore:
    """Durable archive of scraped records.

    Layout::

        <root>/<article_id>/data.json
        <root>/<article_id>/content.html
        <root>/<article_id>/image.<ext>      (optional)
        <root>/<article_id>/archive.pdf      (optional)

    A write is staged in ``<root>/.staging`` and committed by renaming the
    finished directory into place. A record directory is only ever replaced
    as a whole, so readers see either the previous record or the new one.
    """

    def __init__(self, root: Path | str) -> None:
        """Open (and create if needed) an archive rooted at ``root``.

        Raises:
            StorageError: If the root cannot be created or written.
        """
        self._root = Path(root)
        self._staging = self._root / STAGING_DIR
        self._trash = self._root / TRASH_DIR
        self._lock = threading.Lock()

        try:
            self._root.mkdir(parents=True, exist_ok=True)
            self._staging.mkdir(exist_ok=True)
            self._trash.mkdir(exist_ok=True)
        except OSError as e:
            raise StorageError(f"cannot create archive at {self._root}: {e}") from e
        if not os.access(self._root, os.W_OK):
            raise StorageError(f"archive directory {self._root} is not writable")

        self.recover()

    @property
    def root(self) -> Path:
        return self._root

    def record_dir(self, article_id: str) -> Path:
        return self._root / article_id

    def exists(self, article_id: str) -> bool:
        """Whether a complete, valid record is archived for ``article_id``."""
        try:
            self.read(article_id)
        except ArchiveRecordNotFound:
            return False
        return True

    def read(self, article_id: str) -> ArchiveRecord:
        """Load the archived record.

        Raises:
            ArchiveRecordNotFound: If there is no directory or its metadata
                document is missing or invalid.
        """
        data_path = self.record_dir(article_id) / DATA_FILE
        try:
            raw = data_path.read_text(encoding="utf-8")
        except FileNotFoundError as e:
            raise ArchiveRecordNotFound(article_id) from e
        except OSError as e:
            logger.warning("Could not read archive record", article_id=article_id, error=str(e))
            raise ArchiveRecordNotFound(article_id) from e

        try:
            return ArchiveRecord.model_validate_json(raw)
        except ValidationError as e:
            logger.warning(
                "Invalid archive record",
                article_id=article_id,
                path=str(data_path),
                errors=e.error_count(),
            )
            raise ArchiveRecordNotFound(article_id) from e

    def last_scraped_at(self, article_id: str) -> datetime | None:
        """Timestamp of the archived scrape, or None if nothing is archived."""
        try:
            return self.read(article_id).scraped_at
        except ArchiveRecordNotFound:
            return None

    def list_ids(self) -> list[str]:
        """ArticleIds of all committed records, sorted."""
        return sorted(
            entry.name
            for entry in self._root.iterdir()
            if entry.is_dir() and not entry.name.startswith(".") and (entry / DATA_FILE).is_file()
        )

    def write(self, article_id: str, record: ArchiveRecord, assets: ArchiveAssets) -> Path:
        """Persist a record and its assets in a single atomic commit.

        The record's ``*_ref`` fields are set from the assets actually written.

        Returns:
            The committed record directory.

        Raises:
            StorageError: If anything could not be written. The previously
                archived record, if any, is left intact.
        """
        if record.article_id != article_id:
            raise ValueError(
                f"record is for {record.article_id}, refusing to write it as {article_id}"
            )

        record = record.model_copy(
            update={
                "raw_html_ref": CONTENT_FILE,
                "image_ref": image_filename(assets.image.extension) if assets.image else None,
                "pdf_ref": PDF_FILE if assets.pdf is not None else None,
            }
        )

        stage = self._staging / f"{article_id}-{uuid.uuid4().hex[:8]}"
        try:
            stage.mkdir()
            _write_file(stage / CONTENT_FILE, assets.raw_html.encode("utf-8"))
            if assets.image is not None:
                _write_file(stage / image_filename(assets.image.extension), assets.image.data)
            if assets.pdf is not None:
                _write_file(stage / PDF_FILE, assets.pdf)
            # The metadata document goes last: a directory is only "archived"
            # once data.json is present.
            _write_file(stage / DATA_FILE, record.model_dump_json(indent=2).encode("utf-8"))

            with self._lock:
                self._commit(article_id, stage)
        except OSError as e:
            shutil.rmtree(stage, ignore_errors=True)
            logger.error("Archive write failed", article_id=article_id, error=str(e))
            raise StorageError(f"cannot write archive record {article_id}: {e}") from e

        target = self.record_dir(article_id)
        logger.info(
            "Archived record",
            article_id=article_id,
            path=str(target),
            image=record.image_ref,
            pdf=record.pdf_ref,
        )
        return target

    def _commit(self, article_id: str, stage: Path) -> None:
        """Swap the staged directory into place."""
        target = self.record_dir(article_id)
        aside: Path | None = None
        if target.exists():
            aside = self._trash / f"{article_id}-{uuid.uuid4().hex[:8]}"
            os.rename(target, aside)
        try:
            os.rename(stage, target)
        except OSError:
            if aside is not None:
                os.rename(aside, target)
            raise
        _fsync_dir(self._root)
        if aside is not None:
            shutil.rmtree(aside, ignore_errors=True)

    def recover(self) -> None:
        """Clean up after an interrupted write.

        Staging remnants are discarded. A set-aside record whose live
        directory is gone (crash between the two renames of a commit) is put
        back; any other set-aside copy is deleted.
        """
        with self._lock:
            for stage in self._staging.iterdir():
                logger.info("Removing staging remnant", path=str(stage))
                shutil.rmtree(stage, ignore_errors=True)

            for aside in sorted(self._trash.iterdir()):
                article_id = aside.name.rsplit("-", 1)[0]
                target = self.record_dir(article_id)
                if not target.exists() and (aside / DATA_FILE).is_file():
                    logger.warning("Restoring interrupted archive record", article_id=article_id)
                    os.rename(aside, target)
                else:
                    shutil.rmtree(aside, ignore_errors=True)


def _write_file(path: Path, data: bytes) -> None:
    with open(path, "wb") as f:
        f.write(data)
        f.flush()
        os.fsync(f.fileno())


def _fsync_dir(path: Path) -> None:
    try:
        fd = os.open(path, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)
