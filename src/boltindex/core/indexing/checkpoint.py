"""
Append-only checkpoint log (JSON Lines).

Each committed batch appends one CheckpointRecord. The set of completed
inputs is the union over all records, so resuming only needs the log.
Records also carry a content fingerprint per completed input, which lets a
later run re-index inputs whose content changed since they were logged.
A torn final line (crash mid-write) is skipped with a warning.
"""
import json
import os
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Set

from pydantic import ValidationError

from boltindex.config import settings
from boltindex.core.logging import get_logger
from boltindex.schema.pipeline import CheckpointRecord

logger = get_logger(__name__)


class CheckpointLog:
    """
    Usage:
        log = CheckpointLog(".boltindex/checkpoints.jsonl")
        done = log.completed_ids()
        log.append(CheckpointRecord(batch_id=1, completed_input_ids=[...],
                                    index_snapshot_id=3, graph_snapshot_id=2))
    """

    def __init__(self, path: Optional[Path] = None, fsync: bool = True):
        self.path = Path(path or settings.checkpoint_path)
        self.fsync = fsync

    def _repair_tail(self):
        """Drop a torn final line so the next append starts on a line boundary."""
        if not self.path.exists():
            return
        data = self.path.read_bytes()
        if not data or data.endswith(b"\n"):
            return
        keep = data.rfind(b"\n") + 1
        with open(self.path, "r+b") as f:
            f.truncate(keep)
        logger.warning("checkpoint_tail_repaired", path=str(self.path), dropped_bytes=len(data) - keep)

    def append(self, record: CheckpointRecord) -> CheckpointRecord:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._repair_tail()
        line = record.model_dump_json()
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(line + "\n")
            f.flush()
            if self.fsync:
                os.fsync(f.fileno())
        logger.info(
            "checkpoint_written",
            batch_id=record.batch_id,
            completed=len(record.completed_input_ids),
            index_snapshot_id=record.index_snapshot_id,
            graph_snapshot_id=record.graph_snapshot_id,
        )
        return record

    def records(self) -> Iterator[CheckpointRecord]:
        """Valid records in file order."""
        if not self.path.exists():
            return
        with open(self.path, "r", encoding="utf-8") as f:
            lines = f.read().splitlines()

        for lineno, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                yield CheckpointRecord.model_validate(json.loads(line))
            except (json.JSONDecodeError, ValidationError) as e:
                if lineno == len(lines):
                    logger.warning("checkpoint_truncated_line_skipped", path=str(self.path), line=lineno)
                    continue
                logger.error("checkpoint_corrupt_line", path=str(self.path), line=lineno, error=str(e))
                raise

    def latest(self) -> Optional[CheckpointRecord]:
        last = None
        for record in self.records():
            last = record
        return last

    def completed_ids(self) -> Set[str]:
        done: Set[str] = set()
        for record in self.records():
            done.update(record.completed_input_ids)
        return done

    def fingerprints(self) -> Dict[str, str]:
        """Latest recorded content fingerprint per completed input."""
        latest: Dict[str, str] = {}
        for record in self.records():
            for input_id in record.completed_input_ids:
                latest.pop(input_id, None)
            latest.update(record.fingerprints)
        return latest

    def next_batch_id(self) -> int:
        latest = self.latest()
        return latest.batch_id + 1 if latest is not None else 1

    def record_batch(
        self,
        completed_input_ids: Iterable[str],
        index_snapshot_id: int,
        graph_snapshot_id: int,
        batch_id: Optional[int] = None,
        fingerprints: Optional[Mapping[str, str]] = None,
    ) -> CheckpointRecord:
        done = set(completed_input_ids)
        ids: List[str] = sorted(done)
        return self.append(CheckpointRecord(
            batch_id=batch_id if batch_id is not None else self.next_batch_id(),
            completed_input_ids=ids,
            index_snapshot_id=index_snapshot_id,
            graph_snapshot_id=graph_snapshot_id,
            fingerprints={k: v for k, v in (fingerprints or {}).items() if k in done},
        ))

    def clear(self):
        if self.path.exists():
            self.path.unlink()
            logger.info("checkpoint_cleared", path=str(self.path))
