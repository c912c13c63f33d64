from __future__ import annotations

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from formflow.core.config import Settings

# Session tokens are issued elsewhere; this side only needs to read them.
_SALT = "formflow_sid"


def _serializer(settings: Settings) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(settings.SECRET_KEY, salt=_SALT)


def sign_session(settings: Settings, payload: dict) -> str:
    return _serializer(settings).dumps(payload)


def verify_session(settings: Settings, token: str, max_age_seconds: int | None = None) -> dict | None:
    try:
        return _serializer(settings).loads(
            token, max_age=max_age_seconds or settings.SESSION_MAX_AGE_SECONDS
        )
    except (BadSignature, SignatureExpired):
        return None
