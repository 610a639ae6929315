from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.secret_key, salt="access-token")


def generate_access_token(user_id: int) -> str:
    serializer = _serializer()
    return serializer.dumps({"u": user_id})


def resolve_access_token(
    token: str, max_age_hours: Optional[int] = None
) -> Optional[int]:
    settings = get_settings()
    max_age = (max_age_hours or settings.token_max_age_hours) * 3600
    serializer = _serializer()
    try:
        data = serializer.loads(token, max_age=max_age)
    except BadSignature:
        # SignatureExpired is a BadSignature subclass.
        return None

    user_id = data.get("u") if isinstance(data, dict) else None
    if not isinstance(user_id, int):
        return None
    return user_id
