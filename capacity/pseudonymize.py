"""
Deterministic, salted, one-way pseudonymization of identifying names.

The same (salt, value) always yields the same token, so a pseudonymized
report stays internally consistent and reruns with the same salt can be
correlated. The per-run cache is only a memo; it is never written out.
"""
import base64
import hashlib
import logging
import re
import secrets
import threading
from typing import Any, Dict, Optional, Tuple

from .constants import (
    ANONYMIZE_NONE,
    ANONYMIZE_SCOPE_MAP,
    ANONYMIZE_SCOPES,
    PSEUDONYM_LENGTH,
    PSEUDONYM_PREFIXES,
    SCOPE_OBJECT_NAME,
    SCOPE_RESOURCE_GROUP_NAME,
)

logger = logging.getLogger(__name__)

# Detail row fields rewritten per pseudonym scope
SCOPE_FIELDS = {
    SCOPE_OBJECT_NAME: ('display_name', 'identity', 'parent_identity'),
    SCOPE_RESOURCE_GROUP_NAME: ('resource_group',),
}

# Resource IDs embed the group name
_RESOURCE_GROUP_SEGMENT = re.compile(r'(/resourceGroups/)([^/]+)', re.IGNORECASE)
_ID_FIELDS = ('identity', 'parent_identity')

# Azure error codes: "(ResourceGroupNotFound) ..." or a "Code: X" line
_ERROR_CODE = re.compile(r"^\s*\(([A-Z][A-Za-z0-9]*)\)|\bCode:\s*([A-Z][A-Za-z0-9]*)", re.MULTILINE)


def pseudonymize(scope: str, value: str, salt: str) -> str:
    """
    Map a value to a stable opaque token.

    token = prefix(scope) + base32(sha256(salt | value))[:10]

    Truncation to 10 characters is an accepted collision risk for
    reporting, not a security boundary.
    """
    if scope not in PSEUDONYM_PREFIXES:
        raise ValueError(f"Unknown pseudonym scope: {scope}")
    digest = hashlib.sha256(f"{salt}|{value}".encode('utf-8')).digest()
    encoded = base64.b32encode(digest).decode('ascii').lower()
    return f"{PSEUDONYM_PREFIXES[scope]}{encoded[:PSEUDONYM_LENGTH]}"


def generate_salt() -> str:
    """Generate a random per-run salt."""
    return secrets.token_hex(16)


class Pseudonymizer:
    """
    Applies pseudonymization for the scopes enabled by anonymize_scope.

    When no salt is supplied one is generated; callers should surface
    `salt` to the operator (cross-run correlation needs it).
    """

    def __init__(self, anonymize_scope: str = ANONYMIZE_NONE, salt: Optional[str] = None):
        if anonymize_scope not in ANONYMIZE_SCOPES:
            raise ValueError(f"Unknown anonymize scope: {anonymize_scope}")
        self.anonymize_scope = anonymize_scope
        self.enabled_scopes = ANONYMIZE_SCOPE_MAP[anonymize_scope]
        self.salt_generated = not salt
        self._salt = salt or generate_salt()
        self._cache: Dict[Tuple[str, str], str] = {}
        self._lock = threading.Lock()

        if self.enabled_scopes and self.salt_generated:
            logger.warning(
                "No anonymization salt supplied; generated a random salt for this run. "
                "Pseudonyms will not match other runs unless this salt is reused."
            )

    @property
    def salt(self) -> str:
        return self._salt

    @property
    def active(self) -> bool:
        return bool(self.enabled_scopes)

    def is_enabled(self, scope: str) -> bool:
        return scope in self.enabled_scopes

    def token(self, scope: str, value: str) -> str:
        """Memoized pseudonymize() using this run's salt."""
        cache_key = (scope, value)
        with self._lock:
            cached = self._cache.get(cache_key)
            if cached is None:
                cached = pseudonymize(scope, value, self._salt)
                self._cache[cache_key] = cached
            return cached

    def apply(self, scope: str, value: Optional[str]) -> Optional[str]:
        """Pseudonymize value if the scope is enabled, else return it unchanged."""
        if not value or not self.is_enabled(scope):
            return value
        return self.token(scope, value)

    def anonymize_detail(self, row: Dict[str, Any]) -> Dict[str, Any]:
        """Return a copy of a detail row with identifying fields rewritten."""
        if not self.active:
            return dict(row)
        result = dict(row)

        # Group-only anonymization still has to scrub the group out of IDs
        if self.is_enabled(SCOPE_RESOURCE_GROUP_NAME) and not self.is_enabled(SCOPE_OBJECT_NAME):
            for name in _ID_FIELDS:
                if result.get(name):
                    result[name] = _RESOURCE_GROUP_SEGMENT.sub(
                        lambda m: m.group(1) + self.token(SCOPE_RESOURCE_GROUP_NAME, m.group(2).lower()),
                        str(result[name]),
                    )

        for scope, fields in SCOPE_FIELDS.items():
            if not self.is_enabled(scope):
                continue
            for name in fields:
                if result.get(name):
                    value = str(result[name])
                    # Group names are case-insensitive
                    if scope == SCOPE_RESOURCE_GROUP_NAME:
                        value = value.lower()
                    result[name] = self.token(scope, value)
        # Free-form labels can carry names too
        if self.is_enabled(SCOPE_OBJECT_NAME) and result.get('labels'):
            result['labels'] = {}
        return result

    def scrub_message(self, message: Optional[str]) -> str:
        """
        Reduce a provider error message to its error code when anonymizing.

        Messages echo group and resource names in free text, so nothing but
        the code survives. Returns "" when no code can be found.
        """
        if not self.active:
            return message or ""
        match = _ERROR_CODE.search(message or "")
        if not match:
            return ""
        return match.group(1) or match.group(2)

    def __repr__(self) -> str:
        # Never expose the cache
        return f"Pseudonymizer(anonymize_scope={self.anonymize_scope!r}, cached={len(self._cache)})"
