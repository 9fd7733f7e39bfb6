"""Instagram Graph API collaborator.

Only the two calls the webhook pipeline needs live here: resolving the local
account behind a webhook entry id and posting a public reply to a comment.
"""

import httpx
from sqlalchemy.orm import Session

from neuraslide.config import settings
from neuraslide.logging import get_logger
from neuraslide.models.account import InstagramAccount
from neuraslide.services.exceptions import InstagramApiError

logger = get_logger(__name__)


def _graph_base_url() -> str:
    return settings.meta_graph_base_url.rstrip("/")


def get_account_by_external_id(db: Session, ig_user_id: str) -> InstagramAccount | None:
    return (
        db.query(InstagramAccount)
        .filter(InstagramAccount.ig_user_id == str(ig_user_id))
        .filter(InstagramAccount.is_active.is_(True))
        .first()
    )


def reply_to_comment(account: InstagramAccount, comment_id: str, text: str) -> dict:
    """Post ``text`` as a reply to ``comment_id``.

    Raises:
        InstagramApiError: missing token, transport failure or a non-2xx answer.
    """
    if not account.access_token:
        raise InstagramApiError("Instagram account has no access token")
    url = f"{_graph_base_url()}/{comment_id}/replies"
    try:
        with httpx.Client(timeout=settings.meta_http_timeout) as client:
            response = client.post(
                url,
                params={"access_token": account.access_token},
                data={"message": text},
            )
    except httpx.HTTPError as exc:
        logger.warning(
            "instagram_comment_reply_transport_error account_id=%s comment_id=%s error=%s",
            account.id,
            comment_id,
            exc,
        )
        raise InstagramApiError(f"Instagram API request failed: {exc}") from exc

    if response.status_code >= 400:
        logger.warning(
            "instagram_comment_reply_failed account_id=%s comment_id=%s status=%s body=%s",
            account.id,
            comment_id,
            response.status_code,
            response.text,
        )
        raise InstagramApiError(
            f"Instagram API returned {response.status_code}",
            status_code=response.status_code,
        )
    logger.info(
        "instagram_comment_reply_sent account_id=%s comment_id=%s", account.id, comment_id
    )
    try:
        return response.json()
    except ValueError:
        return {}
