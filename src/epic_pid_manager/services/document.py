"""Reading and writing digital documents."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from pydantic import ValidationError

from epic_pid_manager.models import DigitalDocument

logger = logging.getLogger(__name__)


class DocumentError(RuntimeError):
    """Raised when a document cannot be read, written or identified."""


@dataclass
class DocumentStore:
    """Stores a digital document as JSON next to the object it describes."""

    indent: int = 2

    def read(self, path: Path) -> DigitalDocument:
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise DocumentError(f"Could not read document {path}: {exc}") from exc
        try:
            return DigitalDocument.model_validate_json(raw)
        except ValidationError as exc:
            raise DocumentError(f"Document {path} is not a valid digital document: {exc}") from exc

    def write(self, path: Path, document: DigitalDocument) -> None:
        tmp_path = path.with_name(f"{path.name}.tmp")
        try:
            tmp_path.write_text(
                document.model_dump_json(indent=self.indent, exclude_none=True),
                encoding="utf-8",
            )
            tmp_path.replace(path)
        except OSError as exc:
            raise DocumentError(f"Could not write document {path}: {exc}") from exc
        logger.debug("Saved document %s", path)
