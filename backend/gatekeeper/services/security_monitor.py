"""
Pattern-based detection of suspicious request input.

This is substring matching, not analysis: false positives are expected and
only produce a security event for an admin to review.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

from fastapi import Request

from gatekeeper.core.errors import UnauthenticatedError
from gatekeeper.core.security import TokenKind
from gatekeeper.models.audit import SecurityEventType, SecuritySeverity
from gatekeeper.services.audit_service import RequestContext

SQL_INJECTION_PATTERN = re.compile(
    r"('|\"|;|--|/\*|\*/|xp_|sp_|exec|select|insert|update|delete|drop|union|into|load_file|outfile)",
    re.IGNORECASE,
)
XSS_PATTERN = re.compile(r"(<script|javascript:|on\w+\s*=|alert\s*\(|eval\s*\()", re.IGNORECASE)

DETECTORS = (
    (SQL_INJECTION_PATTERN, "Potential SQL injection attempt"),
    (XSS_PATTERN, "Potential XSS attempt"),
)


@dataclass(frozen=True)
class SuspiciousPattern:
    event_type: SecurityEventType
    severity: SecuritySeverity
    details: Dict[str, Any] = field(default_factory=dict)


def _string_values(values: Iterable[Any]) -> List[str]:
    return [value for value in values if isinstance(value, str)]


def detect_suspicious_patterns(
    query: Mapping[str, Any],
    body: Optional[Any],
    path: str,
    method: str,
) -> List[SuspiciousPattern]:
    """Check top-level query and body string values against each detector"""
    candidates = _string_values(query.values())
    if isinstance(body, dict):
        candidates.extend(_string_values(body.values()))

    patterns = []
    for regex, reason in DETECTORS:
        if any(regex.search(value) for value in candidates):
            patterns.append(SuspiciousPattern(
                event_type=SecurityEventType.SUSPICIOUS_LOGIN,
                severity=SecuritySeverity.HIGH,
                details={"reason": reason, "path": path, "method": method},
            ))
    return patterns


async def _json_body(request: Request) -> Optional[Any]:
    if "application/json" not in request.headers.get("content-type", ""):
        return None
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        # Malformed JSON is reported by request validation, not here
        return None


def _caller_id(request: Request) -> Optional[str]:
    authorization = request.headers.get("authorization", "")
    if not authorization.startswith("Bearer "):
        return None
    try:
        payload = request.app.state.tokens.verify(authorization[7:], TokenKind.ACCESS)
    except UnauthenticatedError:
        return None
    return payload.get("sub")


async def security_monitor(request: Request) -> None:
    """Router dependency: record a security event for each matched pattern."""
    body = await _json_body(request)
    patterns = detect_suspicious_patterns(
        request.query_params, body, request.url.path, request.method)
    if not patterns:
        return

    audit = request.app.state.audit
    context = RequestContext.from_request(request)
    user_id = _caller_id(request)
    for pattern in patterns:
        audit.log_security_event(
            pattern.event_type,
            pattern.severity,
            user_id=user_id,
            context=context,
            details=pattern.details,
        )
