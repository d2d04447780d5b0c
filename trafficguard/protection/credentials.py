from __future__ import annotations
import logging
import secrets
import string
import threading
import uuid
from dataclasses import dataclass, field, asdict, replace
from typing import Dict, Iterable, List, Optional

from trafficguard.core.concurrency import Clock, system_clock

logger = logging.getLogger(__name__)

__all__ = ["APICredential", "CredentialCheck", "CredentialStore"]

KEY_PREFIX = "tg_"
KEY_LENGTH = 32
ADMIN_SCOPE = "admin"
_ALPHABET = string.ascii_letters + string.digits

ERR_INVALID = "invalid key"
ERR_DISABLED = "disabled key"
ERR_EXPIRED = "expired key"
ERR_SCOPE = "missing scope"


@dataclass
class APICredential:
    id: str
    key: str
    name: str
    scopes: List[str] = field(default_factory=list)
    rate_limit: int = 100
    enabled: bool = True
    created_at: float = 0.0
    expires_at: Optional[float] = None
    last_used: Optional[float] = None
    usage_count: int = 0

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and self.expires_at < now

    def public(self) -> dict:
        d = asdict(self)
        d["key"] = self.key[:10] + "..."
        return d


@dataclass
class CredentialCheck:
    valid: bool
    credential: Optional[APICredential] = None
    error: Optional[str] = None


class CredentialStore:
    """Issued API keys, indexed by key string."""

    def __init__(self, *, default_rate_limit: int = 100, clock: Clock = system_clock):
        self.default_rate_limit = max(1, int(default_rate_limit))
        self._clock = clock
        self._by_key: Dict[str, APICredential] = {}
        self._lock = threading.Lock()

    @staticmethod
    def _generate_key() -> str:
        return KEY_PREFIX + "".join(secrets.choice(_ALPHABET) for _ in range(KEY_LENGTH))

    def issue(
        self,
        name: str,
        scopes: Iterable[str] = ("read",),
        rate_limit: Optional[int] = None,
        expires_in_hours: Optional[float] = None,
        *,
        key: Optional[str] = None,
    ) -> APICredential:
        """Issue a credential. `key` pins the key string (operator-provided); otherwise one is generated."""
        now = self._clock()
        cred = APICredential(
            id=f"key-{uuid.uuid4().hex[:12]}",
            key=key or self._generate_key(),
            name=name,
            scopes=list(scopes),
            rate_limit=max(1, int(rate_limit if rate_limit is not None else self.default_rate_limit)),
            created_at=now,
            expires_at=(now + float(expires_in_hours) * 3600.0) if expires_in_hours else None,
        )
        with self._lock:
            self._by_key[cred.key] = cred
        logger.info("issued credential id=%s name=%s scopes=%s", cred.id, name, cred.scopes)
        return cred

    def validate(self, key: Optional[str], required_scope: Optional[str] = None) -> CredentialCheck:
        cred = self._by_key.get(key or "")
        if cred is None:
            return CredentialCheck(False, error=ERR_INVALID)
        if not cred.enabled:
            return CredentialCheck(False, cred, ERR_DISABLED)
        if cred.is_expired(self._clock()):
            return CredentialCheck(False, cred, ERR_EXPIRED)
        if required_scope and required_scope not in cred.scopes and ADMIN_SCOPE not in cred.scopes:
            return CredentialCheck(False, cred, ERR_SCOPE)
        return CredentialCheck(True, cred)

    def touch(self, cred: APICredential) -> None:
        with self._lock:
            cred.usage_count += 1
            cred.last_used = self._clock()

    def _find(self, cred_id: str) -> Optional[APICredential]:
        for cred in list(self._by_key.values()):
            if cred.id == cred_id:
                return cred
        return None

    def get(self, cred_id: str) -> Optional[APICredential]:
        cred = self._find(cred_id)
        return replace(cred) if cred else None

    def delete(self, cred_id: str) -> bool:
        with self._lock:
            cred = self._find(cred_id)
            if cred is None:
                return False
            self._by_key.pop(cred.key, None)
        logger.info("deleted credential id=%s", cred_id)
        return True

    def set_enabled(self, cred_id: str, enabled: bool) -> bool:
        with self._lock:
            cred = self._find(cred_id)
            if cred is None:
                return False
            cred.enabled = bool(enabled)
        return True

    def rotate(self, cred_id: str, expires_in_hours: Optional[float] = None) -> Optional[APICredential]:
        """New key with the same name/scopes/limit; the old key is disabled, not deleted."""
        old = self._find(cred_id)
        if old is None:
            return None
        new = self.issue(old.name, old.scopes, old.rate_limit, expires_in_hours)
        with self._lock:
            old.enabled = False
        return new

    def all(self) -> List[APICredential]:
        return list(self._by_key.values())

    def stats(self) -> dict:
        creds = self.all()
        return {
            "total_credentials": len(creds),
            "active_credentials": sum(1 for c in creds if c.enabled),
        }
