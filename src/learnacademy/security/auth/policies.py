"""
Per-endpoint authentication policies.

Paths are matched by longest prefix. Unmatched ``/api`` paths require
authentication; everything else is public.
"""

from dataclasses import dataclass, field

from learnacademy.security.paths import (
    CONTACT_PATH,
    ENROLLMENT_PATH,
    LOGIN_PATH,
    REGISTER_PATH,
    RESET_PASSWORD_PATH,
)

from .core import UserRole

ALL_ROLES = frozenset(UserRole)
STAFF_ROLES = frozenset({UserRole.ADMIN, UserRole.TEACHER})
ADMIN_ONLY = frozenset({UserRole.ADMIN})


@dataclass(frozen=True)
class EndpointPolicy:
    required: bool = True
    methods: frozenset[str] | None = None
    roles: frozenset[UserRole] = field(default_factory=frozenset)
    permissions: frozenset[str] = field(default_factory=frozenset)
    mfa_required: bool = False

    def applies_to(self, method: str) -> bool:
        return self.methods is None or method.upper() in self.methods


PUBLIC = EndpointPolicy(required=False)
AUTHENTICATED = EndpointPolicy(required=True)

DEFAULT_POLICIES: dict[str, EndpointPolicy] = {
    # Public
    "/api/health": PUBLIC,
    "/api/csrf-token": PUBLIC,
    CONTACT_PATH: PUBLIC,
    LOGIN_PATH: PUBLIC,
    REGISTER_PATH: PUBLIC,
    "/api/auth/refresh": PUBLIC,
    RESET_PASSWORD_PATH: PUBLIC,
    # Authenticated, any role
    "/api/auth/logout": AUTHENTICATED,
    "/api/auth/verify-mfa": AUTHENTICATED,
    # Enrollment submissions are public; reading them is staff-only
    ENROLLMENT_PATH: EndpointPolicy(
        methods=frozenset({"GET", "PUT", "PATCH", "DELETE"}),
        roles=STAFF_ROLES,
        permissions=frozenset({"enrollment:read", "enrollment:manage"}),
    ),
    "/api/students": EndpointPolicy(
        roles=frozenset({UserRole.ADMIN, UserRole.TEACHER, UserRole.PARENT}),
        permissions=frozenset({"students:read", "students:write"}),
    ),
    "/api/progress": EndpointPolicy(
        roles=ALL_ROLES - {UserRole.GUEST},
        permissions=frozenset({"progress:read", "progress:write"}),
    ),
    "/api/classes": EndpointPolicy(
        roles=STAFF_ROLES,
        permissions=frozenset({"classes:read", "classes:manage"}),
    ),
    "/api/assignments": EndpointPolicy(
        roles=frozenset({UserRole.ADMIN, UserRole.TEACHER, UserRole.STUDENT}),
        permissions=frozenset({"assignments:read", "assignments:write"}),
    ),
    "/api/admin": EndpointPolicy(
        roles=ADMIN_ONLY,
        permissions=frozenset({"admin:read", "admin:write"}),
        mfa_required=True,
    ),
    "/api/users": EndpointPolicy(
        roles=ADMIN_ONLY,
        permissions=frozenset({"users:read", "users:write"}),
        mfa_required=True,
    ),
    "/api/audit": EndpointPolicy(
        roles=ADMIN_ONLY,
        permissions=frozenset({"audit:read"}),
        mfa_required=True,
    ),
    "/api/security": EndpointPolicy(roles=ADMIN_ONLY),
}


def _matches(path: str, prefix: str) -> bool:
    prefix = prefix.rstrip("/")
    return path == prefix or path.startswith(prefix + "/")


class PolicyTable:
    """Resolve the policy governing a request."""

    def __init__(self, policies: dict[str, EndpointPolicy] | None = None):
        self.policies = dict(DEFAULT_POLICIES if policies is None else policies)
        self._ordered = sorted(self.policies.items(), key=lambda item: len(item[0]), reverse=True)

    def __len__(self) -> int:
        return len(self.policies)

    def resolve(self, path: str, method: str = "GET") -> EndpointPolicy:
        """
        Longest matching prefix wins. A policy limited to certain methods
        leaves other methods to its ``required`` counterpart: public when the
        restricted methods need auth, authenticated otherwise.
        """
        for prefix, policy in self._ordered:
            if _matches(path, prefix):
                if policy.applies_to(method):
                    return policy
                return PUBLIC if policy.required else AUTHENTICATED
        if _matches(path, "/api"):
            return AUTHENTICATED
        return PUBLIC
