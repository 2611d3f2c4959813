"""Identity token creation and decoding.

Token claims:
  - sub:   caller ID (unique identity within the network)
  - role:  organizational role string (Manufacturer, Distributor, ...)
  - type:  "identity"
  - exp:   expiry timestamp
"""

from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from pharmaledger.config import settings

ALGORITHM = settings.jwt_algorithm


def create_identity_token(
    caller_id: str,
    role: str,
    expires_delta: timedelta | None = None,
) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.identity_token_expire_minutes)
    )
    payload = {
        "sub": caller_id,
        "role": role,
        "type": "identity",
        "exp": expire,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def decode_token(token: str) -> dict:
    """Decode and validate a JWT. Returns empty dict on failure."""
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError:
        return {}
