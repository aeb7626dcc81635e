"""
Static security posture audit of API route modules.

Scans FastAPI/Starlette route modules for signs of authentication, rate
limiting, input validation, error handling and audit logging. The result is
a heuristic lint report used for the compliance score on the security
dashboard, not a correctness oracle.
"""

import asyncio
import json
import re
import time
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Literal

import structlog
from pydantic import BaseModel, Field

from learnacademy.security.auth.policies import PolicyTable

logger = structlog.get_logger(__name__)

type IssueSeverity = Literal["low", "medium", "high", "critical"]
type EndpointStatus = Literal["secure", "warning", "critical"]

MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

_ISSUE_WEIGHTS: dict[str, int] = {"critical": 25, "high": 15, "medium": 8, "low": 3}

_ROUTE_RE = re.compile(
    r"@\s*(?P<obj>\w+)\.(?P<method>get|post|put|patch|delete|head|options)\(\s*[\"'](?P<path>[^\"']*)[\"']",
    re.IGNORECASE,
)
_PREFIX_RE = re.compile(r"APIRouter\([^)]*prefix\s*=\s*[\"'](?P<prefix>[^\"']+)[\"']", re.DOTALL)

_AUTH_PATTERNS = (
    re.compile(r"Depends\(\s*(get_current_context|get_current_user|require_\w+)"),
    re.compile(r"\bAuthContext\b"),
    re.compile(r"\brequire_roles\("),
    re.compile(r"headers\.get\(\s*[\"']authorization[\"']", re.IGNORECASE),
)
_RATE_LIMIT_PATTERNS = (
    re.compile(r"rate.?limit", re.IGNORECASE),
    re.compile(r"\bRateLimiter\b"),
    re.compile(r"\b429\b"),
)
_VALIDATION_PATTERNS = (
    re.compile(r"\(\s*BaseModel\s*\)"),
    re.compile(r"\bField\("),
    re.compile(r"field_validator|model_validator"),
    re.compile(r"\bvalidate\w*\("),
)
_ERROR_HANDLING_PATTERNS = (
    re.compile(r"^\s*try:", re.MULTILINE),
    re.compile(r"\bHTTPException\b"),
    re.compile(r"\b\w*Error\("),
)
_AUDIT_PATTERNS = (
    re.compile(r"\blog_\w*event\("),
    re.compile(r"\baudit", re.IGNORECASE),
)
_EXPOSURE_RE = re.compile(r"[\"'](password|secret|ssn|api_key)[\"']\s*:", re.IGNORECASE)
_CSRF_RE = re.compile(r"csrf|xsrf", re.IGNORECASE)
_CORS_WILDCARD_RE = re.compile(r"allow_origins\s*=\s*\[\s*[\"']\*[\"']")
_CORS_CREDENTIALS_RE = re.compile(r"allow_credentials\s*=\s*True")


class IssueType(str, Enum):
    AUTHENTICATION = "authentication"
    AUTHORIZATION = "authorization"
    INPUT_VALIDATION = "input_validation"
    RATE_LIMITING = "rate_limiting"
    ERROR_HANDLING = "error_handling"
    AUDIT_LOGGING = "audit_logging"
    DATA_EXPOSURE = "data_exposure"
    CSRF = "csrf"
    CORS = "cors"


class SecurityIssue(BaseModel):
    type: IssueType
    severity: IssueSeverity
    description: str
    remediation: str
    location: str | None = None


class EndpointAssessment(BaseModel):
    endpoint: str
    methods: list[str]
    file: str
    status: EndpointStatus
    issues: list[SecurityIssue] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)
    has_authentication: bool
    has_rate_limit: bool
    has_input_validation: bool
    has_error_handling: bool
    has_audit_logging: bool
    risk_score: int


class ApiAuditSummary(BaseModel):
    authentication_coverage: int = 0
    rate_limit_coverage: int = 0
    input_validation_coverage: int = 0
    audit_logging_coverage: int = 0


class ApiAuditReport(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    total_endpoints: int = 0
    secure_endpoints: int = 0
    warning_endpoints: int = 0
    critical_endpoints: int = 0
    overall_risk_score: int = 0
    endpoints: list[EndpointAssessment] = Field(default_factory=list)
    summary: ApiAuditSummary = Field(default_factory=ApiAuditSummary)
    recommendations: list[str] = Field(default_factory=list)

    def save_report(self, path: str | Path) -> Path:
        """Write the report as JSON, creating parent directories."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.model_dump(mode="json"), indent=2), encoding="utf-8")
        return path


def _any(patterns: tuple[re.Pattern[str], ...], content: str) -> bool:
    return any(p.search(content) for p in patterns)


def _join(prefix: str, path: str) -> str:
    joined = prefix.rstrip("/") + "/" + path.lstrip("/") if path else prefix
    return joined.rstrip("/") or "/"


def discover_routes(content: str) -> dict[str, list[str]]:
    """Map each route path declared in a module to its HTTP methods."""
    prefix_match = _PREFIX_RE.search(content)
    prefix = prefix_match.group("prefix") if prefix_match else ""
    routes: dict[str, list[str]] = {}
    for match in _ROUTE_RE.finditer(content):
        path = _join(prefix, match.group("path"))
        method = match.group("method").upper()
        methods = routes.setdefault(path, [])
        if method not in methods:
            methods.append(method)
    return routes


class ApiSecurityAuditor:
    """Heuristic scanner producing an :class:`ApiAuditReport`."""

    def __init__(
        self,
        source_dirs: list[str | Path] | None = None,
        policies: PolicyTable | None = None,
        rate_limited_prefixes: tuple[str, ...] = (),
        csrf_protected_prefixes: tuple[str, ...] = (),
        cache_seconds: float = 300.0,
    ):
        self.source_dirs = [Path(d) for d in source_dirs or []]
        self.policies = policies
        self.rate_limited_prefixes = rate_limited_prefixes
        self.csrf_protected_prefixes = csrf_protected_prefixes
        self.cache_seconds = cache_seconds
        self._cached: tuple[float, ApiAuditReport] | None = None

    @staticmethod
    def _covered(path: str, prefixes: tuple[str, ...]) -> bool:
        return any(path == p or path.startswith(p.rstrip("/") + "/") for p in prefixes)

    def _is_public(self, path: str, methods: list[str]) -> bool:
        if self.policies is None:
            return False
        return all(not self.policies.resolve(path, m).required for m in methods or ["GET"])

    def assess_endpoint(
        self, endpoint: str, methods: list[str], content: str, file: str = "<memory>"
    ) -> EndpointAssessment:
        """Score one endpoint using the source of the module declaring it."""
        issues: list[SecurityIssue] = []
        mutating = any(m in MUTATING_METHODS for m in methods)
        public = self._is_public(endpoint, methods)

        enforced_by_policy = self.policies is not None and not public
        has_auth = _any(_AUTH_PATTERNS, content) or enforced_by_policy
        if not has_auth:
            issues.append(
                SecurityIssue(
                    type=IssueType.AUTHENTICATION,
                    severity="low" if public else "high",
                    description="No authentication mechanism detected",
                    remediation="Require a verified AuthContext or declare the endpoint public",
                    location=file,
                )
            )

        has_rate_limit = _any(_RATE_LIMIT_PATTERNS, content) or self._covered(
            endpoint, self.rate_limited_prefixes
        )
        if not has_rate_limit:
            issues.append(
                SecurityIssue(
                    type=IssueType.RATE_LIMITING,
                    severity="medium",
                    description="No rate limiting detected",
                    remediation="Apply a rate limit rule to the endpoint",
                    location=file,
                )
            )

        has_validation = _any(_VALIDATION_PATTERNS, content)
        if not has_validation and mutating:
            issues.append(
                SecurityIssue(
                    type=IssueType.INPUT_VALIDATION,
                    severity="high",
                    description="State-changing endpoint without input validation",
                    remediation="Validate request bodies with pydantic models",
                    location=file,
                )
            )

        has_error_handling = _any(_ERROR_HANDLING_PATTERNS, content)
        if not has_error_handling:
            issues.append(
                SecurityIssue(
                    type=IssueType.ERROR_HANDLING,
                    severity="medium",
                    description="Limited error handling detected",
                    remediation="Raise taxonomy errors so responses share one envelope",
                    location=file,
                )
            )

        has_audit = _any(_AUDIT_PATTERNS, content)
        if not has_audit:
            issues.append(
                SecurityIssue(
                    type=IssueType.AUDIT_LOGGING,
                    severity="medium",
                    description="No audit logging detected",
                    remediation="Record significant actions through the audit logger",
                    location=file,
                )
            )

        for match in _EXPOSURE_RE.finditer(content):
            issues.append(
                SecurityIssue(
                    type=IssueType.DATA_EXPOSURE,
                    severity="high",
                    description=f"Sensitive field '{match.group(1)}' appears in a literal mapping",
                    remediation="Never return or log credentials and identifiers",
                    location=file,
                )
            )

        if (
            mutating
            and public
            and not _CSRF_RE.search(content)
            and not self._covered(endpoint, self.csrf_protected_prefixes)
        ):
            issues.append(
                SecurityIssue(
                    type=IssueType.CSRF,
                    severity="high",
                    description="Public state-changing endpoint lacks CSRF protection",
                    remediation="Validate a CSRF token before changing state",
                    location=file,
                )
            )

        if _CORS_WILDCARD_RE.search(content):
            with_credentials = bool(_CORS_CREDENTIALS_RE.search(content))
            issues.append(
                SecurityIssue(
                    type=IssueType.CORS,
                    severity="critical" if with_credentials else "medium",
                    description="Wildcard CORS origin"
                    + (" combined with credentials" if with_credentials else ""),
                    remediation="List allowed origins explicitly",
                    location=file,
                )
            )

        score = 0
        if not has_auth and not public:
            score += 30
        if not has_rate_limit:
            score += 15
        if not has_validation and mutating:
            score += 25
        score += sum(_ISSUE_WEIGHTS[i.severity] for i in issues)
        score = min(100, score)

        if any(i.severity == "critical" for i in issues):
            status: EndpointStatus = "critical"
        elif any(i.severity == "high" for i in issues) or score > 60:
            status = "warning"
        else:
            status = "secure"

        return EndpointAssessment(
            endpoint=endpoint,
            methods=methods,
            file=file,
            status=status,
            issues=issues,
            recommendations=self._recommendations(issues),
            has_authentication=has_auth,
            has_rate_limit=has_rate_limit,
            has_input_validation=has_validation or not mutating,
            has_error_handling=has_error_handling,
            has_audit_logging=has_audit,
            risk_score=score,
        )

    @staticmethod
    def _recommendations(issues: list[SecurityIssue]) -> list[str]:
        recommendations = []
        if any(i.severity == "critical" for i in issues):
            recommendations.append("CRITICAL: fix critical issues before deployment")
        if any(i.severity == "high" for i in issues):
            recommendations.append("HIGH: resolve high-severity issues as soon as possible")
        types = {i.type for i in issues}
        if IssueType.AUTHENTICATION in types:
            recommendations.append("Protect the endpoint with JWT or API key authentication")
        if IssueType.INPUT_VALIDATION in types:
            recommendations.append("Add pydantic request models")
        if IssueType.RATE_LIMITING in types:
            recommendations.append("Enable rate limiting")
        return recommendations

    def _scan(self) -> list[EndpointAssessment]:
        assessments = []
        for directory in self.source_dirs:
            if not directory.is_dir():
                logger.warning("api_audit.source_dir_missing", path=str(directory))
                continue
            for path in sorted(directory.rglob("*.py")):
                try:
                    content = path.read_text(encoding="utf-8")
                except (OSError, UnicodeDecodeError) as e:
                    logger.warning("api_audit.read_failed", path=str(path), error=str(e))
                    continue
                for endpoint, methods in discover_routes(content).items():
                    assessments.append(self.assess_endpoint(endpoint, methods, content, str(path)))
        return assessments

    @staticmethod
    def build_report(assessments: list[EndpointAssessment]) -> ApiAuditReport:
        total = len(assessments)

        def coverage(flag: str) -> int:
            if not total:
                return 0
            return round(sum(1 for a in assessments if getattr(a, flag)) / total * 100)

        return ApiAuditReport(
            total_endpoints=total,
            secure_endpoints=sum(1 for a in assessments if a.status == "secure"),
            warning_endpoints=sum(1 for a in assessments if a.status == "warning"),
            critical_endpoints=sum(1 for a in assessments if a.status == "critical"),
            overall_risk_score=round(sum(a.risk_score for a in assessments) / total) if total else 0,
            endpoints=assessments,
            summary=ApiAuditSummary(
                authentication_coverage=coverage("has_authentication"),
                rate_limit_coverage=coverage("has_rate_limit"),
                input_validation_coverage=coverage("has_input_validation"),
                audit_logging_coverage=coverage("has_audit_logging"),
            ),
            recommendations=sorted(
                {r for a in assessments for r in a.recommendations if not r.startswith(("CRITICAL", "HIGH"))}
            ),
        )

    async def generate_report(self, force: bool = False) -> ApiAuditReport:
        """Scan the source directories; results are cached for ``cache_seconds``."""
        now = time.monotonic()
        if not force and self._cached is not None and now - self._cached[0] < self.cache_seconds:
            return self._cached[1]

        started = time.perf_counter()
        report = self.build_report(await asyncio.to_thread(self._scan))
        self._cached = (now, report)
        logger.info(
            "api_audit.completed",
            endpoints=report.total_endpoints,
            secure=report.secure_endpoints,
            warning=report.warning_endpoints,
            critical=report.critical_endpoints,
            risk_score=report.overall_risk_score,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return report
