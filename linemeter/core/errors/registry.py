"""
Error registry: the catalog behind every LineMeterError code.

``registry.yaml`` maps each code to what a client is allowed to see (title,
safe message, remediation) and how the API answers (HTTP status, retryable).
The internal ``detail`` of an exception never leaves the process.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from linemeter.core.errors import CODE_PATTERN

logger = logging.getLogger(__name__)

DEFAULT_REGISTRY_PATH = Path(__file__).with_name("registry.yaml")

VALID_DOMAINS = {"USG", "SUB", "TRL", "PLN", "PAY", "SYS"}
VALID_SEVERITIES = {"DEBUG", "INFO", "WARN", "ERROR", "CRITICAL"}
REQUIRED_FIELDS = frozenset({
    "code", "domain", "title", "severity", "retryable",
    "user_action_required", "http_status", "safe_message", "remediation",
})


class RegistryValidationError(Exception):
    """registry.yaml is malformed; raised at load so a bad deploy fails fast."""


@dataclass(frozen=True)
class ErrorEntry:
    code: str
    domain: str
    title: str
    severity: str
    retryable: bool
    user_action_required: bool
    http_status: int
    safe_message: str
    remediation: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)

    def to_body(self) -> Dict[str, Any]:
        """Client-facing error payload."""
        return {
            "code": self.code,
            "title": self.title,
            "message": self.safe_message,
            "retryable": self.retryable,
            "user_action_required": self.user_action_required,
            "remediation": list(self.remediation),
        }


def _parse_entry(idx: int, raw: Dict[str, Any]) -> ErrorEntry:
    missing = REQUIRED_FIELDS - raw.keys()
    if missing:
        raise RegistryValidationError(
            f"Entry {idx} ({raw.get('code', '?')}): missing fields {sorted(missing)}"
        )

    code = raw["code"]
    if not CODE_PATTERN.match(code):
        raise RegistryValidationError(f"Invalid code format: {code!r}")

    prefix = code.split("-")[1]
    if raw["domain"] != prefix:
        raise RegistryValidationError(
            f"{code}: domain {raw['domain']!r} doesn't match code prefix {prefix!r}"
        )
    if prefix not in VALID_DOMAINS:
        raise RegistryValidationError(f"{code}: unknown domain {prefix!r}")
    if raw["severity"] not in VALID_SEVERITIES:
        raise RegistryValidationError(f"{code}: unknown severity {raw['severity']!r}")

    status = int(raw["http_status"])
    if not 400 <= status <= 599:
        raise RegistryValidationError(f"{code}: http_status {status} is not an error status")

    return ErrorEntry(
        code=code,
        domain=prefix,
        title=raw["title"],
        severity=raw["severity"],
        retryable=bool(raw["retryable"]),
        user_action_required=bool(raw["user_action_required"]),
        http_status=status,
        safe_message=raw["safe_message"],
        remediation=list(raw.get("remediation") or []),
        tags=list(raw.get("tags") or []),
    )


class ErrorRegistry:
    def __init__(self) -> None:
        self._entries: Dict[str, ErrorEntry] = {}
        self.schema_version: int = 0

    def load(self, path: Optional[str | Path] = None) -> None:
        """Parse and validate the registry, replacing any previous contents."""
        path = Path(path) if path is not None else DEFAULT_REGISTRY_PATH
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}

        raw_entries = data.get("errors", [])
        if not isinstance(raw_entries, list):
            raise RegistryValidationError("'errors' must be a list")

        entries: Dict[str, ErrorEntry] = {}
        for idx, raw in enumerate(raw_entries):
            entry = _parse_entry(idx, raw)
            if entry.code in entries:
                raise RegistryValidationError(f"Duplicate code: {entry.code}")
            entries[entry.code] = entry

        self._entries = entries
        self.schema_version = int(data.get("schema_version", 0))
        logger.info("Error registry loaded: %d codes from %s", len(entries), path.name)

    def get(self, code: str) -> Optional[ErrorEntry]:
        return self._entries.get(code)

    def lookup(self, code: str) -> ErrorEntry:
        try:
            return self._entries[code]
        except KeyError:
            raise KeyError(f"Unknown error code: {code!r}") from None

    def all_codes(self) -> List[str]:
        return sorted(self._entries)

    def missing(self, codes: Iterable[str]) -> List[str]:
        """Codes raised by the application that have no registry entry."""
        return sorted({c for c in codes if c not in self._entries})

    def __len__(self) -> int:
        return len(self._entries)


# Loaded by the API lifespan and the job CLI
error_registry = ErrorRegistry()
