"""Local-disk blob store for task attachments."""
import logging
import re
from pathlib import Path
from typing import Optional

from config import PUBLIC_BASE_URL, UPLOAD_DIR
from errors import NotFoundError, StoreError, ValidationError

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_filename(name: str) -> str:
    cleaned = _UNSAFE.sub("_", Path(name or "").name).strip("._")
    return cleaned or "file"


def attachment_path(event_id: str, attachment_id: str, filename: str) -> str:
    return f"events/{event_id}/{attachment_id}/{safe_filename(filename)}"


class FileBlobStore:
    def __init__(self, root: Path = UPLOAD_DIR, base_url: str = PUBLIC_BASE_URL):
        self.root = Path(root).resolve()
        self.base_url = base_url.rstrip("/")

    def _resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if target != self.root and self.root not in target.parents:
            raise ValidationError("Invalid blob path", [path])
        return target

    def upload(self, path: str, data: bytes) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            logger.error("Upload to %s failed: %s", path, e)
            raise StoreError("Could not upload file", [str(e)]) from e
        logger.debug("Stored %d bytes at %s", len(data), path)

    def get_download_url(self, path: str) -> str:
        self._resolve(path)
        return f"{self.base_url}/files/{path}"

    def path_from_url(self, url: str) -> Optional[str]:
        prefix = f"{self.base_url}/files/"
        return url[len(prefix):] if url.startswith(prefix) else None

    def open(self, path: str) -> Path:
        target = self._resolve(path)
        if not target.is_file():
            raise NotFoundError("File not found")
        return target

    def delete(self, path: str) -> None:
        target = self._resolve(path)
        target.unlink(missing_ok=True)
