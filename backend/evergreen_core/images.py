"""On-disk storage for driver avatars and circuit diagrams."""

from __future__ import annotations

import logging
import random
import time
from pathlib import Path
from typing import BinaryIO, Optional

from .errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 5 * 1024 * 1024
CIRCUIT_FIELD = "circuitImage"
PROFILE_FIELD = "profilePicture"
_CHUNK_SIZE = 64 * 1024


class ImageStore:
    """Writes uploads below ``<public_dir>/uploads`` and hands out public references.

    A reference is the URL path the static mount serves the file from, e.g.
    ``/uploads/circuits/circuitImage-1716700000000-42.png``.
    """

    def __init__(self, public_dir: Path, max_bytes: int = DEFAULT_MAX_BYTES) -> None:
        self.public_dir = Path(public_dir)
        self.max_bytes = max_bytes

    @property
    def uploads_dir(self) -> Path:
        return self.public_dir / "uploads"

    def directory_for(self, field: str) -> Path:
        if field == CIRCUIT_FIELD:
            return self.uploads_dir / "circuits"
        return self.uploads_dir

    def save(self, field: str, filename: str | None, content_type: str | None, stream: BinaryIO) -> str:
        if not (content_type or "").startswith("image/"):
            raise ValidationError("Only image files are allowed!")

        directory = self.directory_for(field)
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / self._unique_name(field, filename)

        written = 0
        try:
            with target.open("wb") as handle:
                while True:
                    chunk = stream.read(_CHUNK_SIZE)
                    if not chunk:
                        break
                    written += len(chunk)
                    if written > self.max_bytes:
                        raise ValidationError(f"File too large (limit {self.max_bytes} bytes)")
                    handle.write(chunk)
        except (ValidationError, OSError):
            target.unlink(missing_ok=True)
            raise

        if written == 0:
            target.unlink(missing_ok=True)
            raise ValidationError("No file uploaded")

        reference = "/" + target.relative_to(self.public_dir).as_posix()
        logger.info("Stored %s upload %s (%d bytes)", field, reference, written)
        return reference

    def path_for(self, reference: str) -> Path:
        relative = (reference or "").lstrip("/")
        if not relative:
            raise ValueError("Empty image reference")
        root = self.public_dir.resolve()
        candidate = (root / relative).resolve()
        if root != candidate and root not in candidate.parents:
            raise ValueError(f"Image reference escapes the public directory: {reference}")
        return candidate

    def delete(self, reference: str) -> bool:
        """Remove the file behind ``reference``.

        Returns False when nothing was there. Raises ``OSError`` when the file
        exists but cannot be removed.
        """
        try:
            path = self.path_for(reference)
        except ValueError:
            logger.warning("Refusing to delete image outside public directory: %s", reference)
            return False
        if not path.exists():
            return False
        path.unlink()
        logger.info("Deleted image %s", reference)
        return True

    def discard(self, reference: Optional[str]) -> None:
        """Best-effort removal of a freshly stored upload whose operation failed."""
        if not reference:
            return
        try:
            self.delete(reference)
        except OSError as exc:
            logger.warning("Failed to discard upload %s: %s", reference, exc)

    @staticmethod
    def _unique_name(field: str, filename: str | None) -> str:
        suffix = Path(filename or "").suffix.lower()
        stamp = int(time.time() * 1000)
        return f"{field}-{stamp}-{random.randint(0, 10**9)}{suffix}"
