# transcribe_pipeline/services/storage.py
import logging
import os
import shutil
from pathlib import Path
from typing import Union

from transcribe_pipeline.config import STORAGE_PATH, RECORDINGS_NAMESPACE
from transcribe_pipeline.errors import ArtifactNotFoundError, StorageError

logger = logging.getLogger(__name__)


class LocalObjectStorage:
    """
    Object storage on a mounted volume.

    Keys look like ``<namespace>/<name>``; a namespace is a top-level
    directory under ``base_path``.
    """

    def __init__(self, base_path: Union[str, Path] = STORAGE_PATH):
        self.base_path = Path(base_path)

    def _path(self, key: str) -> Path:
        path = (self.base_path / key).resolve()
        if self.base_path.resolve() not in path.parents:
            raise StorageError(f"Invalid storage key: {key}")
        return path

    def put(self, key: str, content: Union[bytes, str]) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, str):
            content = content.encode("utf-8")
        try:
            with open(path, "wb") as f:
                f.write(content)
        except OSError as e:
            raise StorageError(f"Failed to store {key}: {e}")
        logger.info("Stored %s (%d bytes)", key, len(content))
        return key

    def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.is_file():
            raise ArtifactNotFoundError(f"Artifact not found: {key}")
        try:
            with open(path, "rb") as f:
                return f.read()
        except OSError as e:
            raise StorageError(f"Failed to read {key}: {e}")

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def copy(self, src_key: str, dst_key: str) -> str:
        src = self._path(src_key)
        if not src.is_file():
            raise ArtifactNotFoundError(f"Artifact not found: {src_key}")
        dst = self._path(dst_key)
        dst.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.copy2(src, dst)
        except OSError as e:
            raise StorageError(f"Failed to copy {src_key} -> {dst_key}: {e}")
        return dst_key

    def delete(self, key: str) -> None:
        try:
            os.remove(self._path(key))
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageError(f"Failed to delete {key}: {e}")
        logger.info("Deleted %s", key)


def recording_key(filename: str) -> str:
    """Stored filenames are relative to the recordings namespace unless already namespaced."""
    if "/" in filename:
        return filename
    return f"{RECORDINGS_NAMESPACE}/{filename}"


def get_storage() -> LocalObjectStorage:
    return LocalObjectStorage()
