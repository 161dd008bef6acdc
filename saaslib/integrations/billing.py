# =============================================================================
# Billing glue
# =============================================================================
#
# The payment processor itself lives outside this package. What the core
# needs from billing is small:
#   - which plan a user is on (drives per-owner quotas)
#   - a way for webhook handlers to record a plan change
#
# =============================================================================

from __future__ import annotations

import logging
from typing import Protocol

from saaslib.auth.context import AuthContext
from saaslib.core.models import UserIdentity
from saaslib.integrations.email import EmailService
from saaslib.storage.base import CredentialStore

logger = logging.getLogger(__name__)


class BillingProvider(Protocol):
    async def plan_for(self, viewer: AuthContext) -> str:
        """The plan tag currently in force for a user."""
        ...


class UserPlanBilling:
    """
    Reads the plan tag from the stored user record.

    Re-reads on every call so a plan change is visible to the next quota
    check, not only to newly issued contexts.
    """

    def __init__(self, users: CredentialStore):
        self.users = users

    async def plan_for(self, viewer: AuthContext) -> str:
        user = await self.users.get_user(viewer.user_id) if viewer.user_id else None
        return user.plan if user is not None else viewer.plan

    async def change_plan(
        self,
        user_id: str,
        plan: str,
        email: EmailService | None = None,
    ) -> UserIdentity | None:
        """Record a plan change from a billing webhook."""
        user = await self.users.update_user(user_id, {"plan": plan})
        if user is None:
            logger.warning(f"Plan change for unknown user {user_id}")
            return None

        logger.info(f"User {user_id} moved to plan {plan}")
        if email is not None:
            outcome = await email.send_new_subscription(user, plan)
            if outcome is not None and not outcome.sent:
                logger.warning(f"Subscription email to {user_id} not delivered: {outcome.error}")
        return user
