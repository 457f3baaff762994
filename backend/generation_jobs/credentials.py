import base64
import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from cryptography.fernet import Fernet, InvalidToken

from .errors import CredentialError
from .models import ProviderCredential
from .states import CredentialSource

logger = logging.getLogger(__name__)

PROVIDER_ENV_API_KEY = {
    "openai": ["STUDIO_OPENAI_API_KEY", "OPENAI_API_KEY"],
    "anthropic": ["STUDIO_ANTHROPIC_API_KEY", "ANTHROPIC_API_KEY"],
    "google": ["STUDIO_GOOGLE_API_KEY", "GOOGLE_API_KEY", "GEMINI_API_KEY"],
}

SOURCE_ORDER = (CredentialSource.PRIMARY, CredentialSource.FALLBACK, CredentialSource.SPONSOR)


def _fernet() -> Fernet:
    raw = str(
        os.environ.get("STUDIO_CREDENTIALS_ENCRYPTION_KEY") or os.environ.get("STUDIO_SECRET_KEY") or ""
    ).strip()
    if not raw:
        raise CredentialError("Missing STUDIO_CREDENTIALS_ENCRYPTION_KEY")
    try:
        return Fernet(raw.encode("utf-8"))
    except ValueError:
        digest = hashlib.sha256(raw.encode("utf-8")).digest()
        return Fernet(base64.urlsafe_b64encode(digest))


def encrypt_api_key(api_key: str) -> str:
    value = str(api_key or "").strip()
    if not value:
        raise CredentialError("api_key is required")
    return _fernet().encrypt(value.encode("utf-8")).decode("utf-8")


def decrypt_api_key(ciphertext: str) -> str:
    value = str(ciphertext or "").strip()
    if not value:
        return ""
    try:
        return _fernet().decrypt(value.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise CredentialError("Credential decryption failed") from exc


def mask_secret(secret: str) -> Dict[str, Any]:
    value = str(secret or "")
    if not value:
        return {"has_value": False, "masked": None, "last4": None}
    last4 = value[-4:] if len(value) >= 4 else value
    return {"has_value": True, "masked": "***" + last4, "last4": last4}


def _read_provider_env_key(provider: str) -> str:
    for key in PROVIDER_ENV_API_KEY.get(provider, []):
        value = str(os.environ.get(key) or "").strip()
        if value:
            return value
    return ""


def credential_api_key(credential: Optional[ProviderCredential]) -> str:
    if credential is None or not credential.enabled:
        return ""
    if credential.auth_type == "api_key":
        return decrypt_api_key(str(credential.api_key_encrypted or ""))
    env_var = str(credential.env_var_name or "").strip()
    if not env_var:
        return ""
    return str(os.environ.get(env_var) or "").strip()


@dataclass(frozen=True)
class ResolvedCredential:
    api_key: str
    source: str
    credential_id: Optional[str] = None

    def __repr__(self) -> str:
        return f"ResolvedCredential(source={self.source!r}, key={mask_secret(self.api_key)['masked']!r})"


class CredentialResolver:
    def _first_usable(self, rows, source: str) -> Optional[ResolvedCredential]:
        for row in rows:
            try:
                api_key = credential_api_key(row)
            except CredentialError as exc:
                logger.warning("skipping credential %s for %s: %s", row.id, row.provider, exc)
                continue
            if api_key:
                return ResolvedCredential(api_key=api_key, source=source, credential_id=str(row.id))
        return None

    def sources(self, owner_ref: str, provider: str) -> List[ResolvedCredential]:
        owner_ref = str(owner_ref or "").strip()
        provider = str(provider or "").strip().lower()
        base = ProviderCredential.objects.filter(provider=provider, enabled=True).order_by("priority", "created_at")
        resolved: List[ResolvedCredential] = []

        if owner_ref:
            primary = self._first_usable(
                base.filter(owner_ref=owner_ref).exclude(source=CredentialSource.SPONSOR),
                CredentialSource.PRIMARY,
            )
            if primary:
                resolved.append(primary)

        fallback = self._first_usable(
            base.filter(owner_ref="").exclude(source=CredentialSource.SPONSOR),
            CredentialSource.FALLBACK,
        )
        if fallback is None:
            env_key = _read_provider_env_key(provider)
            if env_key:
                fallback = ResolvedCredential(api_key=env_key, source=CredentialSource.FALLBACK)
        if fallback:
            resolved.append(fallback)

        sponsor = self._first_usable(base.filter(source=CredentialSource.SPONSOR), CredentialSource.SPONSOR)
        if sponsor:
            resolved.append(sponsor)
        return resolved

    def resolve(self, owner_ref: str, provider: str) -> ResolvedCredential:
        resolved = self.sources(owner_ref, provider)
        if not resolved:
            raise CredentialError(f"No credential configured for provider '{provider}'")
        return resolved[0]
