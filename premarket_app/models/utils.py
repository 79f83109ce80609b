import secrets
from datetime import datetime, timezone

REQUEST_ID_PREFIX = "R"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_request_id() -> str:
    return f"{REQUEST_ID_PREFIX}{secrets.token_hex(4).upper()}"
