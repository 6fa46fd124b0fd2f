"""
Identity resolver - maps a Gmail address to a Cognito user id.

Gmail push notifications only carry the mailbox address, so the webhook
looks the address up in the Cognito user pool to find whose credentials
to use.
"""

from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from mailwatch.config import get_aws_region, get_user_pool_id
from mailwatch.errors import DirectoryLookupError
from mailwatch.logger import get_logger

logger = get_logger(__name__)


def _email_filter(email: str) -> str:
    """Build an exact-match ListUsers filter, escaping quotes."""
    escaped = email.replace("\\", "\\\\").replace('"', '\\"')
    return f'email = "{escaped}"'


class CognitoIdentityResolver:
    """
    Resolve email addresses against a Cognito user pool.

    Args:
        client: boto3 "cognito-idp" client
        user_pool_id: Pool to search; read from COGNITO_USER_POOL_ID on
            every call when not given
    """

    def __init__(self, client, user_pool_id: Optional[str] = None):
        self.client = client
        self.user_pool_id = user_pool_id

    def resolve(self, email: str) -> Optional[str]:
        """
        Find the user id registered with an email address.

        Returns:
            The user's `sub` (or Username when the pool exposes no sub),
            None when no user has this address

        Raises:
            ConfigurationError: if no user pool id is configured
            DirectoryLookupError: if Cognito cannot be queried
        """
        user_pool_id = self.user_pool_id or get_user_pool_id()

        try:
            response = self.client.list_users(
                UserPoolId=user_pool_id,
                Filter=_email_filter(email)
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(
                "Error getting user ID from Cognito",
                exc_info=True,
                extra={"extra_fields": {"email": email}}
            )
            raise DirectoryLookupError(f"Cognito lookup failed: {e}") from e

        users = response.get("Users", [])
        if not users:
            logger.info("No user found for email", extra={"extra_fields": {"email": email}})
            return None

        user = users[0]
        attributes = {a["Name"]: a.get("Value") for a in user.get("Attributes", [])}
        user_id = attributes.get("sub") or user.get("Username")
        if not user_id:
            logger.error("User found but no Username", extra={"extra_fields": {"email": email}})
            return None

        logger.info(
            "Found user ID for email",
            extra={"extra_fields": {"email": email, "user_id": user_id}}
        )
        return user_id


def get_identity_resolver() -> CognitoIdentityResolver:
    """FastAPI dependency building a resolver with a fresh boto3 client."""
    client = boto3.client("cognito-idp", region_name=get_aws_region())
    return CognitoIdentityResolver(client)
