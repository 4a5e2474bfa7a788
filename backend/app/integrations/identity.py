"""
Identity provider client.

Answers two questions for the forms service: what access a user has to a
company, and (best effort) what a user's display name is. One pooled
httpx.AsyncClient is created at startup and closed on shutdown.
"""
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from app.core.logging import identity_logger
from app.db.enums import AccessLevel


class IdentityServiceError(Exception):
    """The identity provider could not answer an access check."""


@dataclass(frozen=True)
class CompanyAccess:
    access_level: AccessLevel
    has_access: bool

    @property
    def is_admin(self) -> bool:
        return self.access_level == AccessLevel.admin


def _parse_access_level(value: Any) -> AccessLevel:
    if value == "member":
        return AccessLevel.customer
    try:
        return AccessLevel(value)
    except ValueError:
        return AccessLevel.no_access


class IdentityClient:
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        *,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def check_company_access(self, user_id: str, company_id: str) -> CompanyAccess:
        try:
            response = await self._client.get(
                f"/companies/{company_id}/access",
                params={"user_id": user_id},
            )
        except httpx.HTTPError as e:
            identity_logger.error("Access check request failed", error=e, company_id=company_id)
            raise IdentityServiceError("Identity provider unavailable") from e

        if response.status_code < 200 or response.status_code >= 300:
            identity_logger.warning(
                f"Access check returned HTTP {response.status_code}",
                company_id=company_id,
            )
            raise IdentityServiceError(f"Identity provider returned HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise IdentityServiceError("Identity provider returned invalid JSON") from e
        if not isinstance(body, dict):
            identity_logger.warning("Access check payload is not an object", company_id=company_id)
            raise IdentityServiceError("Identity provider returned an unexpected payload")

        level = _parse_access_level(body.get("access_level", body.get("accessLevel")))
        has_access = body.get("has_access", body.get("hasAccess"))
        if has_access is None:
            has_access = level != AccessLevel.no_access
        return CompanyAccess(access_level=level, has_access=bool(has_access))

    async def get_display_name(self, user_id: Optional[str]) -> Optional[str]:
        """
        Resolve a display name for `user_id`.

        Never raises: timeouts, transport errors and unexpected payloads are
        logged and answered with None.
        """
        if not user_id:
            return None
        try:
            response = await self._client.get(f"/users/{user_id}")
            if response.status_code < 200 or response.status_code >= 300:
                identity_logger.warning(
                    f"Display name lookup returned HTTP {response.status_code}",
                    user_id=user_id,
                )
                return None
            body = response.json()
            if not isinstance(body, dict):
                return None
            return body.get("username") or body.get("name") or None
        except httpx.TimeoutException:
            identity_logger.warning("Timeout resolving display name", user_id=user_id)
            return None
        except httpx.HTTPError as e:
            identity_logger.warning("Request error resolving display name", error=e, user_id=user_id)
            return None
        except ValueError as e:
            identity_logger.warning("Invalid display name payload", error=e, user_id=user_id)
            return None

    async def aclose(self) -> None:
        await self._client.aclose()
