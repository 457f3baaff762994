from typing import Any, Dict, Optional

from django.conf import settings

from .providers.local import LocalStorageProvider
from .providers.s3 import S3StorageProvider


class BlobStore:
    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config if config is not None else (getattr(settings, "BLOB_STORAGE", {}) or {})
        storage = self.config.get("storage") if isinstance(self.config.get("storage"), dict) else {}
        self._storage = storage
        self._providers_by_name: Dict[str, Any] = {}
        for provider in storage.get("providers") or []:
            if not isinstance(provider, dict):
                continue
            name = str(provider.get("name") or "").strip()
            if not name:
                continue
            ptype = str(provider.get("type") or "").strip().lower()
            if ptype == "s3":
                self._providers_by_name[name] = S3StorageProvider(provider.get("s3") or {})
            elif ptype == "local":
                self._providers_by_name[name] = LocalStorageProvider(provider.get("local") or {})

    def get_provider(self, name: str):
        provider = self._providers_by_name.get(name)
        if provider:
            return provider
        return LocalStorageProvider({})

    def get_primary_provider(self):
        primary = self._storage.get("primary") if isinstance(self._storage.get("primary"), dict) else {}
        pname = str(primary.get("name") or "").strip()
        if pname:
            return self.get_provider(pname)
        if self._providers_by_name:
            return next(iter(self._providers_by_name.values()))
        return LocalStorageProvider({})

    def put(self, key: str, data: bytes, content_type: str) -> str:
        return self.get_primary_provider().put(key, data, content_type)

    def get(self, key: str) -> bytes:
        return self.get_primary_provider().get(key)

    def delete(self, key: str) -> None:
        self.get_primary_provider().delete(key)

    def url_for(self, key: str) -> str:
        return self.get_primary_provider().url_for(key)


def absolute_url(url: Optional[str], site_url: str = "") -> str:
    value = str(url or "").strip()
    if not value or value.startswith(("http://", "https://")):
        return value
    base = str(site_url or "").strip().rstrip("/")
    if not base:
        return value
    return f"{base}/{value.lstrip('/')}"
