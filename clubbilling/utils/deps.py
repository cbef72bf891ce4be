from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt

from clubbilling.core.config import settings
from clubbilling.services.container import Services

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="auth/login", auto_error=False)

ACCESS_TOKEN_COOKIE_NAME = "access_token"


async def get_current_uid(
    request: Request,
    token: str | None = Depends(oauth2_scheme),
) -> str:
    """Acting user id from the bearer token (or access cookie). Tokens are issued elsewhere."""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"ok": False, "error": "unauthenticated", "message": "Could not validate credentials"},
        headers={"WWW-Authenticate": "Bearer"},
    )

    token_value = token or request.cookies.get(ACCESS_TOKEN_COOKIE_NAME)
    if not token_value:
        raise credentials_exception

    try:
        payload = jwt.decode(token_value, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
        uid: str | None = payload.get("sub")
        if not uid:
            raise credentials_exception
    except JWTError:
        raise credentials_exception

    return str(uid)


def get_services(request: Request) -> Services:
    return request.app.state.services
