"""Identifier generation, MIME allow-list and extension resolution."""
import logging
import mimetypes
import re
import secrets
from pathlib import PurePath
from typing import Iterable, List, Optional, Union

from ..errors import ValidationError

logger = logging.getLogger(__name__)

# 6 random bytes -> 12 hex characters; short URLs, collisions retried by the writer.
ID_BYTES = 6
FALLBACK_EXTENSION = "bin"

_EXT_CLEAN_RE = re.compile(r"[^a-z0-9]")


def generate_id(nbytes: int = ID_BYTES) -> str:
    """Return a random lowercase hex token of ``2 * nbytes`` characters."""
    return secrets.token_hex(nbytes)


def normalize_mime(mime: Optional[str]) -> str:
    """Lowercase *mime* and drop parameters such as ``; charset=utf-8``."""
    if not mime:
        return ""
    return mime.split(";", 1)[0].strip().lower()


def _clean_extension(ext: Optional[str]) -> str:
    if not ext:
        return ""
    return _EXT_CLEAN_RE.sub("", ext.lower())


def resolve_extension(mime: str, original_filename: Optional[str] = None) -> str:
    """Pick the blob extension.

    Priority: the extension registered for *mime*, then the suffix of the
    client-supplied filename, then ``bin``.
    """
    registered = _clean_extension(mimetypes.guess_extension(mime) if mime else None)
    if registered:
        return registered
    if original_filename:
        supplied = _clean_extension(PurePath(original_filename).suffix)
        if supplied:
            return supplied
    return FALLBACK_EXTENSION


class MimePolicy:
    """Ordered allow-list of exact (``type/subtype``) and wildcard (``type/*``) rules."""

    def __init__(self, rules: Union[str, Iterable[str]]) -> None:
        if isinstance(rules, str):
            rules = rules.split(",")
        self._rules: List[str] = [r.strip().lower() for r in rules if r and r.strip()]

    @property
    def rules(self) -> List[str]:
        return list(self._rules)

    def is_allowed(self, mime: Optional[str]) -> bool:
        candidate = normalize_mime(mime)
        if not candidate:
            return False
        for rule in self._rules:
            if rule.endswith("/*"):
                if candidate.startswith(rule[:-1]):
                    return True
            elif candidate == rule:
                return True
        return False

    def check(self, mime: Optional[str]) -> None:
        """Raise ``ValidationError`` when *mime* matches no rule."""
        if not self.is_allowed(mime):
            logger.info("Rejected upload with blocked MIME type %r", mime)
            raise ValidationError("Blocked MIME type")
