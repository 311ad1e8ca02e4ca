from __future__ import annotations

import os
from pathlib import Path, PurePosixPath
from typing import Protocol

from app.domain.errors import ValidationError
from app.infra.logging import get_logger

UPLOAD_ROOT = os.getenv("UPLOAD_ROOT", "/var/lib/rms/uploads")

logger = get_logger(__name__)


class FileStorage(Protocol):
    def delete_files(self, paths: list[str]) -> list[str]: ...


def validate_relative_path(relative_path: str) -> PurePosixPath:
    key_path = PurePosixPath(relative_path.strip())
    if key_path.is_absolute() or ".." in key_path.parts or not key_path.parts:
        raise ValidationError(f"invalid upload path: {relative_path!r}")
    return key_path


class LocalFileStorage:
    """Removes staged upload files under a single root directory.

    Paths are relative to the root. Missing files and paths that escape the
    root are skipped.
    """

    def __init__(self, root_dir: Path | str | None = None) -> None:
        self._root_dir = Path(root_dir if root_dir is not None else UPLOAD_ROOT)

    @property
    def root_dir(self) -> Path:
        return self._root_dir

    def safe_path(self, relative_path: str) -> Path:
        return self._root_dir / Path(*validate_relative_path(relative_path).parts)

    def delete_files(self, paths: list[str]) -> list[str]:
        deleted: list[str] = []
        for raw in paths:
            try:
                path = self.safe_path(raw)
            except ValidationError:
                logger.warning("upload_cleanup_skipped", path=raw)
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                logger.warning("upload_cleanup_failed", path=raw, error=str(exc))
                continue
            deleted.append(raw)
        if deleted:
            logger.info("upload_cleanup", deleted=len(deleted))
        return deleted
