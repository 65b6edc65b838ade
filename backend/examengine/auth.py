"""Bearer-token verification for the exam API.

Login itself happens elsewhere; this module only verifies a JWT to learn
who the current user is. Requests without a token are treated as guests.
"""

from typing import Optional
from fastapi import HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt
from .config import settings

bearer_scheme = HTTPBearer(auto_error=False)


def decode_token(token: str):
    """Decode and verify a JWT token.

    Returns the decoded payload on success or raises an HTTPException
    with status 401 on failure.
    """
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail='token expired')
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail='invalid token')


def get_current_user_id(credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme)) -> Optional[int]:
    """FastAPI dependency returning the user id from the bearer token.

    Returns `None` for guests (no Authorization header) and raises 401 for
    a token that is present but invalid.
    """
    if credentials is None:
        return None
    payload = decode_token(credentials.credentials)
    user_id = payload.get('user_id')
    if not isinstance(user_id, int):
        raise HTTPException(status_code=401, detail='invalid token payload')
    return user_id
