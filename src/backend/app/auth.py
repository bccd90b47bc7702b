from dataclasses import dataclass
from fastapi import Header, HTTPException
from typing import Optional, Dict, Any
import os
import jwt
from jwt import PyJWKClient


@dataclass
class UserContext:
    user_id: str
    role: str  # owner | agent | viewer
    tenant_id: str


ROLES = {"owner", "agent", "viewer"}


def _tenant_from_claims(payload: Dict[str, Any]) -> str:
    # explicit claim, then app_metadata.tenant_id, then the Supabase user id
    return str(
        payload.get("tenant_id")
        or (payload.get("app_metadata") or {}).get("tenant_id")
        or payload.get("sub")
        or ""
    )


def _decode_token(token: str) -> Dict[str, Any]:
    jwks_url = os.getenv("JWT_JWKS_URL")
    supa_url = os.getenv("SUPABASE_URL", "").strip().rstrip("/")
    if not jwks_url and supa_url:
        jwks_url = f"{supa_url}/auth/v1/keys"
    aud = os.getenv("JWT_AUDIENCE", "authenticated")
    issuer = os.getenv("JWT_ISSUER") or (f"{supa_url}/auth/v1" if supa_url else "")

    alg = ""
    try:
        alg = (jwt.get_unverified_header(token) or {}).get("alg", "")
    except Exception:
        alg = ""

    if alg.startswith("HS") or not jwks_url:
        secret = os.getenv("JWT_SECRET", "dev_secret")
        if issuer:
            try:
                return jwt.decode(token, secret, algorithms=["HS256", "HS512"], audience=aud, issuer=issuer)
            except jwt.InvalidIssuerError:
                pass
        # signature and audience still verified; issuer forms differ between Supabase projects
        return jwt.decode(
            token,
            secret,
            algorithms=["HS256", "HS512"],
            audience=aud,
            options={"verify_iss": False},
        )
    signing_key = PyJWKClient(jwks_url).get_signing_key_from_jwt(token)
    return jwt.decode(
        token,
        signing_key.key,
        algorithms=["RS256", "ES256"],
        audience=aud,
        issuer=issuer or None,
    )


async def get_user_context(
    x_user_id: Optional[str] = Header(default=None),
    x_role: Optional[str] = Header(default=None),
    x_tenant_id: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
) -> UserContext:
    dev_allow = os.getenv("DEV_AUTH_ALLOW", "0") == "1"
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1]
        try:
            payload = _decode_token(token)
        except Exception:
            if not (dev_allow and (x_user_id or x_tenant_id)):
                raise HTTPException(status_code=401, detail="invalid_token")
        else:
            tenant_id = _tenant_from_claims(payload)
            if not tenant_id:
                raise HTTPException(status_code=401, detail="invalid_token")
            return UserContext(
                user_id=str(payload.get("sub", "user")),
                role=str((payload.get("app_metadata") or {}).get("role") or "owner"),
                tenant_id=tenant_id,
            )
    if not dev_allow:
        raise HTTPException(status_code=401, detail="missing_token")
    # developer headers, explicitly allowed only
    role = (x_role or "owner").lower()
    if role not in ROLES:
        raise HTTPException(status_code=403, detail="invalid_role")
    return UserContext(user_id=x_user_id or "dev-user", role=role, tenant_id=x_tenant_id or x_user_id or "t1")


def require_cron_secret(x_cron_secret: Optional[str] = Header(default=None)) -> None:
    expected = os.getenv("CRON_SECRET", "")
    if expected and x_cron_secret != expected:
        raise HTTPException(status_code=401, detail="invalid_cron_secret")
