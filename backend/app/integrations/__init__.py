"""
Integrations package for external services (identity provider).
"""
from app.integrations.identity import CompanyAccess, IdentityClient, IdentityServiceError

__all__ = ["CompanyAccess", "IdentityClient", "IdentityServiceError"]
