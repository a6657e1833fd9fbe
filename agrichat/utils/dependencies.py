from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer

from agrichat.core.errors import AuthFailed
from agrichat.utils.security import verify_token


oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")


async def get_current_user(token: str = Depends(oauth2_scheme)) -> dict:
    try:
        user_id = verify_token(token)
    except AuthFailed as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.reason,
            headers={"WWW-Authenticate": "Bearer"},
        )
    return {"_id": user_id}
