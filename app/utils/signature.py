import hashlib
import hmac
from typing import Optional

from fastapi import HTTPException, status


def compute_signature(app_secret: str, body: bytes) -> str:
    digest = hmac.new(app_secret.encode(), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def signature_matches(app_secret: str, body: bytes, header_value: Optional[str]) -> bool:
    if not header_value:
        return False
    return hmac.compare_digest(compute_signature(app_secret, body), header_value.strip())


def verify_meta_signature(body: bytes, app_secret: Optional[str], header_value: Optional[str]) -> None:
    """Reject a delivery whose X-Hub-Signature-256 does not match the app secret.

    Skipped entirely when no app secret is configured.
    """
    if not app_secret:
        return
    if not signature_matches(app_secret, body, header_value):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid webhook signature",
        )
