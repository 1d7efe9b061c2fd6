import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

from .errors import (
    AssetDeleteError,
    AssetWriteError,
    InvalidNameError,
    MetadataUnavailableError,
    NotFoundError,
)
from .storage import (
    AssetNotFoundError,
    AssetRecord,
    AssetStore,
    InvalidFilenameError,
    JournalError,
    MetadataJournal,
    SafeName,
    sanitize_filename,
)
from .uploads import DecodedUpload

logger = logging.getLogger("mediastore.assets")
audit_logger = logging.getLogger("mediastore.audit")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class DeleteOutcome(enum.Enum):
    DELETED = "deleted"
    DELETED_WITH_METADATA_WARNING = "deleted_with_metadata_warning"


@dataclass(frozen=True)
class IngestOutcome:
    """Result of a stored upload.

    ``metadata_saved`` is False when the file is on disk but the journal
    append failed; the upload still counts as successful.
    """

    record: AssetRecord
    metadata_saved: bool = True
    metadata_error: Optional[str] = None


@dataclass
class ConsistencyReport:
    orphan_files: List[str] = field(default_factory=list)
    dangling_records: List[str] = field(default_factory=list)

    @property
    def consistent(self) -> bool:
        return not self.orphan_files and not self.dangling_records


def require_safe_name(name: Optional[str]) -> SafeName:
    """Sanitize *name*, translating a rejection into a client error."""

    try:
        return sanitize_filename(name)
    except InvalidFilenameError as error:
        logger.warning("filename_rejected name=%r reason=%s", (name or "")[:128], error.reason)
        raise InvalidNameError(detail=error.reason) from error


class AssetLibrary:
    """Composes the asset store and the metadata journal into the three
    client-facing operations: ingest, list and delete."""

    def __init__(
        self,
        store: AssetStore,
        journal: MetadataJournal,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.journal = journal
        self._clock = clock

    def ingest(self, upload: DecodedUpload) -> IngestOutcome:
        name = require_safe_name(upload.filename)

        try:
            size = self.store.write(name, upload.payload)
        except OSError as error:
            logger.error("asset_write_failed file=%s error=%s", name, error)
            raise AssetWriteError(detail=str(error)) from error

        now = self._clock().isoformat()
        creation_date = upload.creation_date.isoformat() if upload.creation_date else now
        record = AssetRecord(
            file=str(name),
            size_bytes=size,
            title=upload.title,
            creation_date=creation_date,
            last_modified=now,
        )

        try:
            self.journal.append(record)
        except JournalError as error:
            logger.warning(
                "metadata_append_failed file=%s error=%s - asset stored without metadata",
                name,
                error,
            )
            return IngestOutcome(record=record, metadata_saved=False, metadata_error=str(error))

        logger.info("asset_ingested file=%s size=%d", name, size)
        return IngestOutcome(record=record)

    def list_metadata(self) -> List[AssetRecord]:
        try:
            return self.journal.load()
        except JournalError as error:
            logger.error("metadata_read_failed error=%s", error)
            raise MetadataUnavailableError(detail=str(error)) from error

    def delete(self, raw_name: Optional[str]) -> DeleteOutcome:
        name = require_safe_name(raw_name)

        if not self.store.exists(name):
            logger.info("asset_delete_missing file=%s", name)
            raise NotFoundError()

        try:
            self.store.remove(name)
        except AssetNotFoundError as error:
            # Lost a race with a concurrent delete.
            logger.info("asset_delete_missing_race file=%s", name)
            raise NotFoundError() from error
        except OSError as error:
            logger.error("asset_delete_failed file=%s error=%s", name, error)
            raise AssetDeleteError(detail=str(error)) from error

        try:
            removed = self.journal.remove_where(lambda record: record.file == name)
        except JournalError as error:
            logger.warning(
                "metadata_remove_failed file=%s error=%s - asset already deleted",
                name,
                error,
            )
            return DeleteOutcome.DELETED_WITH_METADATA_WARNING

        logger.info("asset_deleted file=%s records_removed=%d", name, removed)
        return DeleteOutcome.DELETED

    def resolve(self, raw_name: Optional[str]) -> SafeName:
        """Return the sanitized name of an existing asset for serving."""

        name = require_safe_name(raw_name)
        if not self.store.exists(name):
            raise NotFoundError()
        return name

    def audit_consistency(self) -> ConsistencyReport:
        """Compare the journal with the content directory.

        Divergence is reported, never repaired.
        """

        records = self.journal.load()
        on_disk = self.store.list_names()
        in_journal = {record.file for record in records}

        report = ConsistencyReport(
            orphan_files=sorted(on_disk - in_journal),
            dangling_records=sorted(in_journal - on_disk),
        )
        if report.consistent:
            audit_logger.info("consistency_audit_ok assets=%d", len(on_disk))
        else:
            audit_logger.warning(
                "consistency_audit_mismatch orphan_files=%s dangling_records=%s",
                report.orphan_files,
                report.dangling_records,
            )
        return report
