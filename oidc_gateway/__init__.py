"""
OIDC Gateway

Relying-party gateway between browser clients and an OpenID Connect identity
provider: authorization code login, cookie-carried sessions, refresh token
rotation, bearer token introspection, and role-based route guards.
"""

__version__ = "1.0.0"
