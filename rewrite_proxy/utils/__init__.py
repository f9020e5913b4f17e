from datetime import datetime, timezone
from typing import Optional

from rewrite_proxy.models import ErrorEnvelope


def mask_token(text: str, token: Optional[str]) -> str:
    return text.replace(token, f"{token[:4]}****") if token else text


def utc_timestamp() -> str:
    """ISO-8601 timestamp used in response envelopes."""
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def error_envelope(error: str, message: str) -> dict:
    return ErrorEnvelope(
        error=error, message=message, timestamp=utc_timestamp()
    ).model_dump()
