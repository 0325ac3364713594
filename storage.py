import copy
import json
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

import structlog

from errors import StorageError

logger = structlog.get_logger()


class DocumentStore(ABC):
    """Durable home for one whole JSON document."""

    @abstractmethod
    def load(self) -> Optional[Any]:
        """Return the stored document, or None if nothing was stored yet."""
        pass

    @abstractmethod
    def save(self, document: Any) -> None:
        """Replace the stored document with ``document``."""
        pass


class JsonFileStore(DocumentStore):
    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Optional[Any]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise StorageError(f"Could not read {self.path}: {e}") from e

    def save(self, document: Any) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(document, f, indent=2)
                os.replace(tmp_path, self.path)
            except BaseException:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"Could not write {self.path}: {e}") from e

        logger.debug("Document flushed", path=str(self.path))


class InMemoryDocumentStore(DocumentStore):
    def __init__(self, document: Optional[Any] = None):
        self.document = copy.deepcopy(document)
        self.saves = 0

    def load(self) -> Optional[Any]:
        return copy.deepcopy(self.document)

    def save(self, document: Any) -> None:
        # Round-trip through JSON so unserializable state fails like on disk
        try:
            self.document = json.loads(json.dumps(document))
        except (TypeError, ValueError) as e:
            raise StorageError(f"Could not serialize document: {e}") from e
        self.saves += 1
