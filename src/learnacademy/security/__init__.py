"""
Learn Academy Security Core - trust and operational-safety services.

This package provides the cross-cutting security layer for Learn Academy:
- Audit logging (hash-protected NDJSON partitions, compliance reports)
- Error taxonomy with uniform API envelopes
- CSRF tokens, rate limiting, authentication and RBAC middleware
- Circuit breakers and retries for outbound calls
- Field-level encryption with key rotation
- Security monitoring, threat detection and automated response
"""

from typing import Any

__version__ = "1.0.0"
__author__ = "Learn Academy Engineering"

# Process-wide service registry
_services_registry: dict[str, Any] = {}


def get_version() -> str:
    """Get security core version."""
    return __version__


def register_service(name: str, service: Any) -> None:
    """Register a security service."""
    _services_registry[name] = service


def get_service(name: str) -> Any | None:
    """Get a registered security service."""
    return _services_registry.get(name)


def is_service_available(name: str) -> bool:
    """Check if a service is available."""
    return name in _services_registry


def get_available_services() -> list[str]:
    """Get list of available services."""
    return list(_services_registry.keys())


def clear_services() -> None:
    """Drop all registered services (mainly for testing)."""
    _services_registry.clear()


__all__ = [
    "__version__",
    "get_version",
    "register_service",
    "get_service",
    "is_service_available",
    "get_available_services",
    "clear_services",
]
