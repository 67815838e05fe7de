"""
Reception Crawl Checkpoint
==========================

Persists crawl progress to disk so an interrupted crawl resumes where it
stopped: completed subjects are skipped, the in-progress subject restarts at
its saved page, and the last errors survive the restart.

One class serves every crawl entity type; the entity name only selects the
file: CHECKPOINT_DIR/<entity>-crawler-progress.json

Saves are atomic (temp file + rename). Item-level progress is saved every
`save_interval` items; page and subject boundaries always save.

Usage:
    checkpoint = CheckpointStore("./crawler-data", entity="review")
    checkpoint.start_subject(5114, "Fullmetal Alchemist: Brotherhood")
    checkpoint.record_item()
    checkpoint.complete_subject(5114)
"""

import os
import json
import copy
import logging
import tempfile
from pathlib import Path
from typing import Optional, Dict, Any, List, Set, Union

from pydantic import BaseModel, Field, field_serializer

from ..data.data_models import (
    CrawlProgress,
    CrawlConfig,
    CrawlTotals,
    CrawlError,
    CurrentSubject,
    MAX_ERROR_ENTRIES,
    utc_now,
)

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1


class CheckpointWriteError(Exception):
    """The checkpoint could not be written; progress is no longer durable."""

    def __init__(self, path: Path, cause: Exception):
        self.path = path
        self.cause = cause
        super().__init__(f"Failed to write checkpoint {path}: {cause}")


class CheckpointDocument(BaseModel):
    """
    On-disk shape of CrawlProgress.

    processed_subject_ids is a set in memory and a sorted list on disk.
    """

    version: int = CHECKPOINT_VERSION
    processed_subject_ids: Set[int] = Field(default_factory=set)
    current_subject: Optional[CurrentSubject] = None
    totals: CrawlTotals = Field(default_factory=CrawlTotals)
    errors: List[CrawlError] = Field(default_factory=list)
    config: CrawlConfig = Field(default_factory=CrawlConfig)
    started_at: str
    last_updated_at: str

    @field_serializer("processed_subject_ids")
    def _serialize_ids(self, ids: Set[int]) -> List[int]:
        return sorted(ids)

    @classmethod
    def from_progress(cls, progress: CrawlProgress) -> "CheckpointDocument":
        return cls(
            processed_subject_ids=set(progress.processed_subject_ids),
            current_subject=progress.current_subject,
            totals=progress.totals,
            errors=list(progress.errors),
            config=progress.config,
            started_at=progress.started_at,
            last_updated_at=progress.last_updated_at,
        )

    def to_progress(self) -> CrawlProgress:
        return CrawlProgress(
            processed_subject_ids=set(self.processed_subject_ids),
            current_subject=self.current_subject,
            totals=self.totals,
            errors=list(self.errors)[-MAX_ERROR_ENTRIES:],
            config=self.config,
            started_at=self.started_at,
            last_updated_at=self.last_updated_at,
        )


class CheckpointStore:
    """
    Durable, resumable crawl progress for one entity type.

    Assumes a single writer: two crawls sharing a checkpoint directory and
    entity will overwrite each other's progress.
    """

    def __init__(
        self,
        directory: Union[str, Path] = "./crawler-data",
        entity: str = "review",
        save_interval: int = 10,
        default_config: Optional[CrawlConfig] = None,
    ):
        if save_interval <= 0:
            raise ValueError("save_interval must be positive")
        self.directory = Path(directory)
        self.entity = entity
        self.save_interval = save_interval
        self.default_config = default_config or CrawlConfig()
        self.path = self.directory / f"{entity}-crawler-progress.json"
        self.export_path = self.directory / f"{entity}-crawler-progress-export.json"

        self._unsaved_items = 0
        self.progress: CrawlProgress = self.load()

    # =========================================================================
    # Load / save / reset
    # =========================================================================

    def _fresh(self) -> CrawlProgress:
        return CrawlProgress(config=copy.deepcopy(self.default_config))

    def load(self) -> CrawlProgress:
        """Read progress from disk; missing or corrupt files start fresh."""
        if self.path.exists():
            try:
                document = CheckpointDocument.model_validate_json(self.path.read_text(encoding="utf-8"))
                progress = document.to_progress()
                logger.info(
                    f"Loaded {self.entity} crawler checkpoint: "
                    f"{progress.totals.items_ingested} items, "
                    f"{progress.totals.subjects_completed} subjects completed"
                )
                return progress
            except (OSError, ValueError) as e:
                logger.warning(f"Could not load {self.entity} crawler checkpoint, starting fresh: {e}")

        return self._fresh()

    def _write_atomic(self, path: Path, payload: str) -> None:
        tmp_name = None
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.directory,
                prefix=f".{path.name}.",
                suffix=".tmp",
                delete=False,
            ) as tmp:
                tmp_name = tmp.name
                tmp.write(payload)
                tmp.flush()
                os.fsync(tmp.fileno())
            os.replace(tmp_name, path)
        except OSError as e:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise CheckpointWriteError(path, e) from e

    def save(self) -> None:
        """
        Persist the in-memory progress.

        Raises:
            CheckpointWriteError: If the file cannot be written
        """
        self.progress.last_updated_at = utc_now().isoformat()
        document = CheckpointDocument.from_progress(self.progress)
        self._write_atomic(self.path, document.model_dump_json(indent=2))
        self._unsaved_items = 0
        logger.debug(f"Checkpoint saved to {self.path}")

    def reset(self) -> None:
        """Discard all progress and delete the checkpoint file."""
        self.progress = self._fresh()
        self._unsaved_items = 0
        self.path.unlink(missing_ok=True)
        logger.info(f"{self.entity.capitalize()} crawler checkpoint reset")

    def configure(self, config: CrawlConfig) -> None:
        """Record the parameters of a new run and save."""
        self.progress.config = config
        self.progress.started_at = utc_now().isoformat()
        self.save()
        if self.progress.totals.items_ingested > 0:
            logger.info(
                f"Resuming from previous session: "
                f"{self.progress.totals.items_ingested} items already ingested"
            )

    # =========================================================================
    # Subject lifecycle
    # =========================================================================

    @property
    def current_subject(self) -> Optional[CurrentSubject]:
        return self.progress.current_subject

    def is_processed(self, subject_id: int) -> bool:
        return self.progress.is_processed(subject_id)

    def resume_page_for(self, subject_id: int) -> int:
        """Page to continue from: the saved cursor for the in-progress subject, else 1."""
        current = self.progress.current_subject
        if current is not None and current.subject_id == subject_id:
            return current.page
        return 1

    def start_subject(self, subject_id: int, title: str) -> CurrentSubject:
        """Mark a subject as in progress, keeping its cursor if it was already current."""
        current = self.progress.current_subject
        if current is None or current.subject_id != subject_id:
            current = CurrentSubject(subject_id=subject_id, title=title)
            self.progress.current_subject = current
        self.save()
        return current

    def park_subject(self, subject_id: int) -> Optional[CurrentSubject]:
        """Detach a different in-progress subject so `subject_id` can be crawled on its own."""
        current = self.progress.current_subject
        if current is None or current.subject_id == subject_id:
            return None
        logger.info(f"Parking in-progress subject {current.title} at page {current.page}")
        self.progress.current_subject = None
        return current

    def restore_subject(self, parked: CurrentSubject) -> None:
        """Reinstate a parked subject as the one in progress and save."""
        current = self.progress.current_subject
        if current is not None and current.subject_id != parked.subject_id:
            logger.warning(
                f"Dropping cursor of {current.title} (page {current.page}) "
                f"to restore {parked.title}"
            )
        self.progress.current_subject = parked
        self.save()

    def complete_page(self, page: int) -> None:
        """Advance the in-progress subject's cursor past `page` and save."""
        if self.progress.current_subject is not None:
            self.progress.current_subject.page = page + 1
        self.save()

    def record_item(self) -> None:
        """Count one ingested item; saves every save_interval items."""
        self.progress.totals.items_ingested += 1
        if self.progress.current_subject is not None:
            self.progress.current_subject.items_processed += 1

        self._unsaved_items += 1
        if self._unsaved_items >= self.save_interval:
            self.save()

    def complete_subject(self, subject_id: int) -> None:
        """Mark a subject fully processed and save."""
        if subject_id not in self.progress.processed_subject_ids:
            self.progress.processed_subject_ids.add(subject_id)
            self.progress.totals.subjects_completed += 1
        current = self.progress.current_subject
        if current is not None and current.subject_id == subject_id:
            self.progress.current_subject = None
        self.save()

    def abandon_subject(self, subject_id: int) -> None:
        """Drop the in-progress subject without marking it processed."""
        current = self.progress.current_subject
        if current is not None and current.subject_id == subject_id:
            self.progress.current_subject = None
        self.save()

    # =========================================================================
    # Error ring
    # =========================================================================

    def log_error(
        self,
        kind: str,
        message: str,
        subject_id: Optional[int] = None,
        page: Optional[int] = None,
    ) -> None:
        """Append an error, keeping only the last 100, and save."""
        self.progress.errors.append(CrawlError(
            timestamp=utc_now().isoformat(),
            kind=kind,
            message=message,
            subject_id=subject_id,
            page=page,
        ))
        if len(self.progress.errors) > MAX_ERROR_ENTRIES:
            self.progress.errors = self.progress.errors[-MAX_ERROR_ENTRIES:]
        self.save()

    def recent_errors(self, limit: int = 10) -> List[CrawlError]:
        return self.progress.errors[-limit:]

    # =========================================================================
    # Reporting
    # =========================================================================

    def get_progress_summary(self) -> Dict[str, Any]:
        totals = self.progress.totals
        current = self.progress.current_subject
        return {
            "total_subjects": totals.subjects_completed,
            "total_items": totals.items_ingested,
            "processed_ids": len(self.progress.processed_subject_ids),
            "current_subject": current.title if current else None,
            "current_page": current.page if current else None,
            "errors": len(self.progress.errors),
            "average_items_per_subject": (
                totals.items_ingested / totals.subjects_completed
                if totals.subjects_completed > 0 else 0.0
            ),
            "started_at": self.progress.started_at,
            "last_updated_at": self.progress.last_updated_at,
        }

    def export_progress(self) -> Path:
        """Write a read-only snapshot with a summary next to the checkpoint."""
        document = CheckpointDocument.from_progress(self.progress)
        payload = document.model_dump(mode="json")
        payload["summary"] = self.get_progress_summary()

        self._write_atomic(self.export_path, json.dumps(payload, indent=2, default=str))
        logger.info(f"{self.entity.capitalize()} crawler progress exported to: {self.export_path}")
        return self.export_path
