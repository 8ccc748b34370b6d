"""Storage service for blob operations."""
import json
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Optional, Tuple
from uuid import UUID

from megallery.core.exceptions import StorageException
from megallery.models.domain import DerivativeKind

logger = logging.getLogger(__name__)


class StorageService:
    """Service for managing blob storage under a single root directory.

    Layout::

        <root>/derivatives/<image_id>/<width>x<height>-<kind>.<ext>
        <root>/embeddings/<collection_id>.json
        <root>/atlases/<collection_id>.png, <collection_id>.json
    """

    def __init__(self, root: Path):
        """Initialize storage service rooted at ``root``."""
        self.root = Path(root)
        self.derivatives_dir = self.root / "derivatives"
        self.embeddings_dir = self.root / "embeddings"
        self.atlases_dir = self.root / "atlases"

        # Ensure directories exist
        self._ensure_directories()

    def _ensure_directories(self):
        """Ensure all storage directories exist."""
        for directory in [
            self.root,
            self.derivatives_dir,
            self.embeddings_dir,
            self.atlases_dir,
        ]:
            directory.mkdir(parents=True, exist_ok=True)

    # Paths

    def image_dir(self, image_id: UUID) -> Path:
        return self.derivatives_dir / str(image_id)

    def derivative_path(
        self,
        image_id: UUID,
        width: int,
        height: int,
        kind: DerivativeKind,
        extension: str
    ) -> Path:
        """
        Get the deterministic path of a derivative file.

        Args:
            image_id: Image UUID
            width: Derivative width
            height: Derivative height
            kind: Derivative kind
            extension: File extension without dot

        Returns:
            Full path to the derivative file
        """
        return self.image_dir(image_id) / f"{width}x{height}-{kind.value}.{extension}"

    def find_derivative(
        self,
        image_id: UUID,
        width: int,
        height: int,
        kind: DerivativeKind
    ) -> Optional[Path]:
        """Find a stored derivative regardless of its extension."""
        directory = self.image_dir(image_id)
        if not directory.is_dir():
            return None
        matches = sorted(directory.glob(f"{width}x{height}-{kind.value}.*"))
        return matches[0] if matches else None

    def embedding_path(self, collection_id: UUID) -> Path:
        return self.embeddings_dir / f"{collection_id}.json"

    def atlas_paths(self, collection_id: UUID) -> Tuple[Path, Path]:
        """Image and mapping document of a collection's static atlas."""
        base = self.atlases_dir / str(collection_id)
        return base.with_suffix(".png"), base.with_suffix(".json")

    def relative(self, path: Path) -> str:
        return str(path.relative_to(self.root))

    # File operations

    def save_file(self, file_data: bytes, file_path: Path) -> Path:
        """
        Save binary data to a file atomically.

        The data is written to a temporary file in the destination directory
        and renamed into place, so readers never observe a partial file.

        Raises:
            StorageException: If save fails
        """
        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=file_path.parent, prefix=".tmp-")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(file_data)
                os.replace(tmp_name, file_path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
            return file_path
        except Exception as e:
            raise StorageException(f"Failed to save file {file_path}: {e}")

    def read_file(self, file_path: Path) -> bytes:
        """
        Read binary data from a file.

        Raises:
            StorageException: If the file is missing or unreadable
        """
        try:
            if not file_path.exists():
                raise StorageException(f"File not found: {file_path}")

            with open(file_path, 'rb') as f:
                return f.read()
        except StorageException:
            raise
        except Exception as e:
            raise StorageException(f"Failed to read file {file_path}: {e}")

    def delete_file(self, file_path: Path) -> bool:
        """
        Delete a file.

        Returns:
            True if deleted, False if file didn't exist
        """
        try:
            if file_path.exists():
                file_path.unlink()
                return True
            return False
        except Exception as e:
            raise StorageException(f"Failed to delete file {file_path}: {e}")

    def delete_directory(self, dir_path: Path) -> bool:
        """
        Delete a directory and all its contents.

        Returns:
            True if deleted, False if directory didn't exist
        """
        try:
            if dir_path.exists() and dir_path.is_dir():
                shutil.rmtree(dir_path)
                return True
            return False
        except Exception as e:
            raise StorageException(f"Failed to delete directory {dir_path}: {e}")

    # JSON documents

    def write_json(self, data: Any, file_path: Path) -> Path:
        return self.save_file(json.dumps(data).encode("utf-8"), file_path)

    def read_json(self, file_path: Path) -> Optional[Any]:
        """Read a JSON document, returning None when it is missing or unreadable."""
        if not file_path.exists():
            return None
        try:
            return json.loads(self.read_file(file_path))
        except json.JSONDecodeError as e:
            logger.warning(f"Ignoring unreadable JSON document {file_path}: {e}")
            return None
