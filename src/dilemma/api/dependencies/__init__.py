"""
API Dependencies package.

Cross-cutting concerns like authentication.
"""

from .auth import is_auth_enabled, verify_api_key

__all__ = ["is_auth_enabled", "verify_api_key"]
