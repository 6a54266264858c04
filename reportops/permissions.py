"""Signed bearer tokens and the feature/action permission gate.

Tokens are ``<base64url payload>.<base64url HMAC-SHA256>`` with ``sub``,
``role`` and ``exp`` in the payload. Which role may do what is answered by a
:class:`PermissionStore` attached to ``app.state.permissions``; with no store
attached every request is allowed (auth disabled).
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal, Mapping, Protocol

from fastapi import Request

from reportops.errors import AuthError, PermissionDeniedError

PermissionAction = Literal["can_view", "can_create", "can_edit", "can_delete"]

ACTIONS: tuple[str, ...] = ("can_view", "can_create", "can_edit", "can_delete")

FEATURES: dict[str, tuple[str, ...]] = {
    "analytics.dashboard": ("can_view",),
    "analytics.marketing_report": ("can_view",),
    "analytics.on_page_analysis": ("can_view",),
    "analytics.validation_reports": ("can_view",),
    "tools.marketing_tracker": ACTIONS,
    "tools.marketing_pipeline": ACTIONS,
    "shared.saved_views": ACTIONS,
    "admin.user_management": ACTIONS,
    "admin.product_settings": ACTIONS,
    "admin.role_permissions": ACTIONS,
}

AUTH_COOKIE_NAME = "reportops_auth"
TOKEN_TTL_SECONDS_DEFAULT = 12 * 60 * 60


@dataclass(frozen=True)
class Principal:
    subject: str
    role: str


def _b64url_encode(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64url_decode(data: str) -> bytes:
    padding = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + padding)


def _sign(payload_part: str, secret: str) -> str:
    digest = hmac.new(secret.encode("utf-8"), payload_part.encode("utf-8"), hashlib.sha256).digest()
    return _b64url_encode(digest)


def issue_token(subject: str, role: str, secret: str, *, ttl: int = TOKEN_TTL_SECONDS_DEFAULT, now: int | None = None) -> str:
    now = int(time.time()) if now is None else now
    payload = {"sub": subject, "role": role, "iat": now, "exp": now + ttl}
    payload_part = _b64url_encode(json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    return f"{payload_part}.{_sign(payload_part, secret)}"


def validate_token(token: str, secret: str, *, now: int | None = None) -> Principal | None:
    token = str(token or "").strip()
    if not token or "." not in token or not secret:
        return None

    payload_part, sig_part = token.split(".", 1)
    if not hmac.compare_digest(sig_part, _sign(payload_part, secret)):
        return None

    try:
        payload = json.loads(_b64url_decode(payload_part).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None

    now = int(time.time()) if now is None else now
    if int(payload.get("exp", 0) or 0) <= now:
        return None

    subject = str(payload.get("sub", "")).strip()
    role = str(payload.get("role", "")).strip()
    if not subject or not role:
        return None
    return Principal(subject, role)


def extract_request_token(request: Request) -> str:
    auth_header = str(request.headers.get("authorization", "")).strip()
    if auth_header.lower().startswith("bearer "):
        return auth_header[7:].strip()
    return str(request.cookies.get(AUTH_COOKIE_NAME) or "").strip()


class PermissionStore(Protocol):
    def authenticate(self, token: str) -> Principal | None: ...

    def is_allowed(self, principal: Principal, feature: str, action: str) -> bool: ...


@dataclass
class StaticPermissionStore:
    """Role grants from a JSON file: ``{"secret": ..., "roles": {role: {feature: [actions]}}}``."""

    secret: str
    roles: Mapping[str, Mapping[str, tuple[str, ...]]] = field(default_factory=dict)
    # Roles allowed everything
    admin_roles: frozenset[str] = frozenset({"admin"})

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StaticPermissionStore":
        roles = {
            str(role): {str(f): tuple(actions) for f, actions in (grants or {}).items()}
            for role, grants in (data.get("roles") or {}).items()
        }
        admin = frozenset(data.get("adminRoles") or ("admin",))
        return cls(secret=str(data.get("secret", "")), roles=roles, admin_roles=admin)

    @classmethod
    def from_file(cls, path: str | Path) -> "StaticPermissionStore":
        return cls.from_dict(json.loads(Path(path).read_text(encoding="utf-8")))

    def authenticate(self, token: str) -> Principal | None:
        return validate_token(token, self.secret)

    def is_allowed(self, principal: Principal, feature: str, action: str) -> bool:
        if principal.role in self.admin_roles:
            return True
        return action in self.roles.get(principal.role, {}).get(feature, ())


def with_permission(feature: str, action: PermissionAction = "can_view"):
    """FastAPI dependency: 401 without a valid token, 403 without the grant."""
    if feature not in FEATURES:
        raise ValueError(f"Unknown feature: {feature}")
    if action not in FEATURES[feature]:
        raise ValueError(f"{action} does not apply to {feature}")

    async def dependency(request: Request) -> Principal | None:
        store: PermissionStore | None = getattr(request.app.state, "permissions", None)
        if store is None:
            return None
        principal = store.authenticate(extract_request_token(request))
        if principal is None:
            raise AuthError("Unauthorized")
        if not store.is_allowed(principal, feature, action):
            raise PermissionDeniedError(f"Missing {action} on {feature}", {"role": principal.role})
        return principal

    return dependency
