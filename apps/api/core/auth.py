"""
FastAPI dependency resolving the calling user.
"""
from uuid import UUID
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.exceptions import UnauthorizedError
from core.security import decode_token, user_id_from_claims

# auto_error=False: a missing header must be 401, not HTTPBearer's 403
bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user_id(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> UUID:
    if credentials is None:
        raise UnauthorizedError("Not authenticated")

    claims = decode_token(credentials.credentials)
    if claims is None:
        raise UnauthorizedError("Invalid or expired token")

    user_id = user_id_from_claims(claims)
    if user_id is None:
        raise UnauthorizedError("Token subject is not a user id")
    return user_id
