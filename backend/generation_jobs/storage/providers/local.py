import os
import re
from pathlib import Path
from typing import Any, Dict

from ...errors import StorageError


def safe_key(key: str) -> str:
    parts = [re.sub(r"[^a-zA-Z0-9._-]+", "-", part.strip()) for part in str(key or "").split("/")]
    parts = [part for part in parts if part and part not in (".", "..")]
    if not parts:
        raise StorageError("blob key is required")
    return "/".join(parts)


class LocalStorageProvider:
    provider_type = "local"

    def __init__(self, config: Dict[str, Any]):
        self.config = config or {}
        self.base_path = Path(
            str(self.config.get("base_path") or os.environ.get("STUDIO_BLOB_LOCAL_PATH") or "/tmp/studio-blobs")
        )
        self.public_base_url = str(self.config.get("public_base_url") or "").strip().rstrip("/")

    def _path(self, key: str) -> Path:
        return self.base_path / safe_key(key)

    def url_for(self, key: str) -> str:
        key = safe_key(key)
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"/blobs/{key}"

    def put(self, key: str, data: bytes, content_type: str) -> str:
        full_path = self._path(key)
        try:
            full_path.parent.mkdir(parents=True, exist_ok=True)
            full_path.write_bytes(data)
        except OSError as exc:
            raise StorageError(f"local blob write failed: {exc}") from exc
        return self.url_for(key)

    def get(self, key: str) -> bytes:
        try:
            return self._path(key).read_bytes()
        except OSError as exc:
            raise StorageError(f"local blob read failed: {exc}") from exc

    def delete(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"local blob delete failed: {exc}") from exc
