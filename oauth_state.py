from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="google-oauth-state")


def generate_state(user_id: int) -> str:
    return _serializer().dumps({"u": user_id})


def read_state(token: Optional[str], max_age_secs: int = 600) -> Optional[int]:
    """Return the user id carried by a state token, or None when it is
    missing, tampered with or older than ``max_age_secs``."""
    if not token:
        return None
    try:
        data = _serializer().loads(token, max_age=max_age_secs)
    except BadSignature:
        return None
    user_id = data.get("u") if isinstance(data, dict) else None
    return user_id if isinstance(user_id, int) else None
