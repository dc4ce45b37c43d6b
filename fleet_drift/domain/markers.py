"""Machine-readable markers embedded in tracking issue bodies."""

import json
import re
from typing import Optional

from fleet_drift.domain.models import Finding, IssueKey

_IDENTITY_RE = re.compile(r"<!--\s*(fleet-drift:[^\s]+)\s*-->")
_STATE_RE = re.compile(r"<!--\s*fleet-drift-state:\s*(\{.*?\})\s*-->", re.DOTALL)


def identity_marker(key: IssueKey) -> str:
    return f"<!-- {key.marker} -->"


def state_marker(finding: Finding) -> str:
    return f"<!-- fleet-drift-state: {json.dumps(finding.to_marker(), sort_keys=True)} -->"


def parse_identity(body: Optional[str]) -> Optional[str]:
    """Return the identity marker value in body, or None."""
    match = _IDENTITY_RE.search(body or "")
    return match.group(1) if match else None


def matches_key(body: Optional[str], key: IssueKey) -> bool:
    """True only when the body carries exactly this key's identity marker."""
    return parse_identity(body) == key.marker


def parse_finding(body: Optional[str]) -> Optional[Finding]:
    """Recover the last synced finding from an issue body."""
    match = _STATE_RE.search(body or "")
    if not match:
        return None
    try:
        return Finding.from_marker(json.loads(match.group(1)))
    except (ValueError, KeyError, TypeError):
        return None
