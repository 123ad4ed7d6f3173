"""HTTP client for the platform's membership service."""

import logging
from urllib.parse import quote

import httpx

from ..core.config import Settings, get_settings
from ..services.errors import ServiceError
from ..services.interfaces import MembershipService


logger = logging.getLogger(__name__)


class HttpMembershipClient(MembershipService):
    """
    Grants and declines role requests through the membership REST API.

    Each call is made exactly once; failures surface as ServiceError.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout_seconds: float = 30.0,
    ):
        self._base_url = base_url.rstrip("/")
        self._token = token
        self._client = client
        self._timeout = timeout_seconds

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> "HttpMembershipClient":
        settings = settings or get_settings()
        return cls(
            base_url=settings.membership_api_url,
            token=settings.membership_api_token,
            client=client,
            timeout_seconds=settings.membership_timeout_seconds,
        )

    async def grant_role(self, project_name: str, user_name: str, role_name: str) -> None:
        await self._post(
            f"/projects/{quote(project_name, safe='')}/roles/{quote(role_name, safe='')}/grants",
            {"user": user_name},
        )
        logger.info(f"Granted {role_name} in {project_name} to {user_name}")

    async def decline_role(
        self,
        project_name: str,
        user_name: str,
        role_name: str,
        reason: str,
    ) -> None:
        await self._post(
            f"/projects/{quote(project_name, safe='')}/roles/{quote(role_name, safe='')}/declines",
            {"user": user_name, "reason": reason},
        )
        logger.info(f"Declined {role_name} in {project_name} for {user_name}")

    async def _post(self, path: str, payload: dict) -> None:
        headers = {"Accept": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        url = f"{self._base_url}{path}"
        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, json=payload, headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise ServiceError(
                f"Membership service refused {path}: "
                f"{e.response.status_code} {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise ServiceError(f"Membership service unreachable for {path}: {e}") from e
