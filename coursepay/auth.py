from fastapi import Header, HTTPException, Request
from jose import JWTError, jwt


def get_current_user_id(request: Request, authorization: str = Header(None)) -> int:
    """Buyer id from the `sub` claim of an HS256 bearer token."""
    try:
        scheme, token = (authorization or "").split()
        if scheme.lower() != "bearer":
            raise ValueError("Unsupported authorization scheme")
        claims = jwt.decode(token, request.app.state.settings.jwt_secret, algorithms=["HS256"])
        return int(claims["sub"])
    except (ValueError, KeyError, TypeError, JWTError):
        raise HTTPException(status_code=401, detail="Invalid or missing token")
