"""Authentication endpoints."""

from pydantic import ValidationError

from relay.client import RelayClient
from relay.core.logging import get_logger
from relay.pipeline import BusinessError, Priority, TokenResponse

logger = get_logger(__name__)


async def login(client: RelayClient, username: str, password: str) -> TokenResponse:
    """Sign in with the password grant and store the returned tokens.

    Args:
        client: Connected relay client
        username: Account name
        password: Account password

    Returns:
        The validated token payload (access and refresh tokens)

    Raises:
        PipelineError: Any pipeline failure (401 here is a plain
            ClientError, never a refresh trigger)
        BusinessError: The response carried no usable access token
    """
    outcome = await client.post(
        client.settings.login_path,
        json={
            "username": username,
            "password": password,
            "grant_type": "password",
        },
        key=f"login:{username}",
        priority=Priority.HIGH,
        cancellation=None,
        authenticated=False,
        retry_budget=0,
    )

    try:
        token = TokenResponse.from_body(outcome.body)
    except ValidationError as e:
        raise BusinessError(
            "Login response did not contain an access token",
            outcome,
            business_code="INVALID_TOKEN_RESPONSE",
        ) from e

    client.credentials.set_credential(token.access_token, token.refresh_token)
    logger.info("Signed in", username=username, expires_in=token.expires_in)
    return token


def logout(client: RelayClient, reason: str = "Signed out") -> None:
    """Drop stored credentials and cancel requests of the current scope."""
    client.credentials.clear()
    client.invalidate_scope(reason)
    logger.info("Signed out")
