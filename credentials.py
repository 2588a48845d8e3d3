# -*- coding: utf-8 -*-
"""
Credential pools for Sora Studio

A pool holds the credentials of one kind in user order. Two access
patterns read the same list:

- manual selection (active_index), used by production: one fixed
  credential per batch run
- rotation, used by publishing: each batch drains its own working copy
  so a failed credential is skipped for the rest of that batch only
"""

import re
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Iterable

from config import CredentialKind, ErrorCode
from error_handler import ValidationError, mask_secret

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CredentialEntry:
    """Opaque token (or raw cURL text) plus its position in the pool"""
    value: str
    position: int

    @property
    def suffix(self) -> str:
        return mask_secret(self.value)


class CredentialRotation:
    """
    Batch-scoped working copy of a pool.

    The head is always tried first; a failing head is discarded for the
    remainder of the batch.
    """

    def __init__(self, entries: Iterable[CredentialEntry]):
        self._entries: List[CredentialEntry] = list(entries)
        self.discarded: List[CredentialEntry] = []

    @property
    def current(self) -> Optional[CredentialEntry]:
        return self._entries[0] if self._entries else None

    @property
    def exhausted(self) -> bool:
        return not self._entries

    @property
    def remaining(self) -> List[CredentialEntry]:
        return list(self._entries)

    def rotate_next(self) -> Optional[CredentialEntry]:
        """Drop the head and return the new head, or None when exhausted"""
        if self._entries:
            dropped = self._entries.pop(0)
            self.discarded.append(dropped)
            logger.info(
                f"[KeyPool] Discarded credential #{dropped.position + 1} ({dropped.suffix}) - "
                f"{len(self._entries)} left"
            )
        return self.current

    def __len__(self) -> int:
        return len(self._entries)


class CredentialPool:
    """Ordered credentials of one kind with a manually selected active entry"""

    def __init__(self, kind: CredentialKind, values: Iterable[str] = (), active_index: int = 0):
        self.kind = kind
        self._values: List[str] = [v.strip() for v in values if v and v.strip()]
        self.active_index = active_index if 0 <= active_index < len(self._values) else 0

    @property
    def entries(self) -> List[CredentialEntry]:
        return [CredentialEntry(value=v, position=i) for i, v in enumerate(self._values)]

    @property
    def values(self) -> List[str]:
        return list(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def add(self, value: str) -> CredentialEntry:
        value = (value or "").strip()
        if not value:
            raise ValidationError("Credential cannot be empty", code=ErrorCode.INVALID_CREDENTIAL)
        self._values.append(value)
        return CredentialEntry(value=value, position=len(self._values) - 1)

    def remove(self, index: int) -> CredentialEntry:
        if not 0 <= index < len(self._values):
            raise ValidationError(f"No {self.kind.value} credential at position {index + 1}",
                                  code=ErrorCode.INVALID_CREDENTIAL)
        value = self._values.pop(index)
        if self.active_index >= len(self._values):
            self.active_index = 0
        return CredentialEntry(value=value, position=index)

    def select(self, index: int) -> CredentialEntry:
        if not 0 <= index < len(self._values):
            raise ValidationError(f"No {self.kind.value} credential at position {index + 1}",
                                  code=ErrorCode.INVALID_CREDENTIAL)
        self.active_index = index
        return self.entries[index]

    def active(self) -> Optional[CredentialEntry]:
        if not self._values:
            return None
        return CredentialEntry(value=self._values[self.active_index], position=self.active_index)

    def working_copy(self) -> CredentialRotation:
        """Snapshot for one batch; later pool edits do not affect it and vice versa"""
        return CredentialRotation(self.entries)

    def to_dict(self) -> Dict:
        return {
            "kind": self.kind.value,
            "count": len(self._values),
            "active_index": self.active_index,
            "entries": [{"position": e.position, "preview": e.suffix} for e in self.entries],
        }


_CURL_HEADER_QUOTED = re.compile(r"""-H\s+(['"])([^:'"]+):\s*(.*?)\1""")
_CURL_HEADER_BARE = re.compile(r"""-H\s+([^:\s'"]+):\s*([^'"\s]+)""")


def parse_headers_from_curl(curl_text: str) -> Dict[str, str]:
    """Extract -H 'name: value' pairs from a copied cURL command (names lower-cased)"""
    headers: Dict[str, str] = {}
    if not curl_text:
        return headers

    for _, name, value in _CURL_HEADER_QUOTED.findall(curl_text):
        headers[name.strip().lower()] = value.strip()

    if not headers:
        for name, value in _CURL_HEADER_BARE.findall(curl_text):
            headers[name.strip().lower()] = value.strip()

    return headers


def require_authorization(headers: Dict[str, str]) -> Dict[str, str]:
    """Reject credentials that carry no Authorization header"""
    if not headers.get("authorization"):
        raise ValidationError(
            "The active cURL credential is invalid: no Authorization header found.",
            code=ErrorCode.INVALID_CREDENTIAL,
        )
    return headers
