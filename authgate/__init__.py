"""
authgate: OIDC login and session service for Microsoft Entra ID.

Exchanges Entra ID authorization codes server-side, verifies the ID token,
maps provider roles to internal roles and permissions, and issues a
short-lived session JWT in an HttpOnly cookie.
"""

__version__ = "1.0.0"
