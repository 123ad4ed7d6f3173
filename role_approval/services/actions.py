"""Action Executor: applies the terminal decision of a conversation."""

import logging

from .errors import ServiceError
from .interfaces import MembershipService, RoleRequest


logger = logging.getLogger(__name__)


class ActionExecutor:
    """
    Thin wrapper over the membership service.

    It does not guard against being called twice; the conversation engine
    only calls it after winning the transition into APPLYING.
    """

    def __init__(self, membership: MembershipService):
        self._membership = membership

    async def apply_approve(self, request: RoleRequest) -> None:
        """Grant the requested role."""
        logger.info(f"Approving request: {request}")
        try:
            await self._membership.grant_role(
                request.project_name, request.user_name, request.role_name
            )
        except ServiceError:
            raise
        except Exception as e:
            raise ServiceError(f"Failed to grant {request}: {e}") from e

    async def apply_deny(self, request: RoleRequest, reason: str) -> None:
        """Decline the requested role with a reason for the requester."""
        logger.info(f"Denying request: {request}")
        try:
            await self._membership.decline_role(
                request.project_name, request.user_name, request.role_name, reason
            )
        except ServiceError:
            raise
        except Exception as e:
            raise ServiceError(f"Failed to decline {request}: {e}") from e
