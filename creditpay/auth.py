from fastapi import Depends, Header, HTTPException
from jose import jwt, JOSEError

from creditpay.config import admin_user_ids, jwt_secret


def verify_token(authorization: str = Header(...)) -> str:
    """Return the authenticated user id (the token's ``sub`` claim)."""
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid or missing token")
    try:
        claims = jwt.decode(token, jwt_secret(), algorithms=["HS256"])
    except JOSEError:
        raise HTTPException(status_code=401, detail="Invalid or missing token")

    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return str(user_id)


def verify_admin(user_id: str = Depends(verify_token)) -> str:
    if user_id not in admin_user_ids():
        raise HTTPException(status_code=403, detail="Operator access required")
    return user_id
