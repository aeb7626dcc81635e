"""
Public API paths shared by the endpoint policy table and the rate limiter.
"""

API_PREFIX = "/api"

CONTACT_PATH = "/api/contact"
ENROLLMENT_PATH = "/api/enrollment"
LOGIN_PATH = "/api/auth/login"
REGISTER_PATH = "/api/auth/register"
RESET_PASSWORD_PATH = "/api/auth/reset-password"
