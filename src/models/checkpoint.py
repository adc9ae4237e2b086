"""
Single-file checkpoint of pipeline stage outputs.

The file is one JSON object whose keys are stage names. A key that is missing
means the stage has not completed yet. The whole object is rewritten after
every stage through a temporary file and an atomic rename, so the file on disk
is always a complete document.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, List, Optional, Union

from pydantic import ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from .domain import STAGE_ORDER, Stage
from .schemas import (
    AuditRecord,
    CamelModel,
    EnrichedAuditRecord,
    EnrichedKeyword,
    KeywordRecord,
    PipelineContext,
)

logger = logging.getLogger(__name__)

STAGE_FIELDS = {
    Stage.CONTEXT: "context",
    Stage.KEYWORDS: "keyword_records",
    Stage.ENRICHED_KEYWORDS: "enriched_keywords",
    Stage.AUDIT: "audit",
    Stage.ENRICHED_AUDIT: "enriched_audit",
}


class CheckpointFormatError(ValueError):
    pass


class CheckpointSnapshot(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    context: Optional[PipelineContext] = None
    keyword_records: Optional[List[KeywordRecord]] = None
    enriched_keywords: Optional[List[EnrichedKeyword]] = None
    audit: Optional[List[AuditRecord]] = None
    enriched_audit: Optional[List[EnrichedAuditRecord]] = None

    def get(self, stage: Stage) -> Any:
        return getattr(self, STAGE_FIELDS[stage])

    def has(self, stage: Stage) -> bool:
        return self.get(stage) is not None

    def set(self, stage: Stage, value: Any) -> None:
        setattr(self, STAGE_FIELDS[stage], value)

    def completed_stages(self) -> list[Stage]:
        return [stage for stage in STAGE_ORDER if self.has(stage)]

    def to_json_dict(self) -> dict:
        data = {}
        for stage in STAGE_ORDER:
            value = self.get(stage)
            if value is None:
                continue
            if isinstance(value, list):
                data[stage.value] = [item.to_json() for item in value]
            else:
                data[stage.value] = value.to_json()
        return data


class CheckpointStore:
    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path is not None else None

    @property
    def enabled(self) -> bool:
        return self.path is not None

    def load(self) -> CheckpointSnapshot:
        if self.path is None:
            return CheckpointSnapshot()

        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.info(f"Checkpoint file {self.path} not found. Starting from an empty checkpoint.")
            return CheckpointSnapshot()

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CheckpointFormatError(f"Invalid checkpoint format in {self.path}: {e}") from e

        if not isinstance(data, dict):
            raise CheckpointFormatError(f"Invalid checkpoint format in {self.path}: root is not an object")

        try:
            snapshot = CheckpointSnapshot.model_validate(data)
        except ValidationError as e:
            raise CheckpointFormatError(f"Invalid checkpoint format in {self.path}: {e}") from e

        completed = [s.value for s in snapshot.completed_stages()]
        logger.info(f"Loaded checkpoint {self.path} with stages: {completed}")
        return snapshot

    def save(self, snapshot: CheckpointSnapshot) -> None:
        if self.path is None:
            return
        self._write(snapshot.to_json_dict())

    def clear(self) -> None:
        if self.path is None or not self.path.exists():
            logger.info(f"Checkpoint file {self.path} not found. Nothing to clear.")
            return
        self._write({})

    def _write(self, data: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
            os.replace(tmp_name, self.path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
