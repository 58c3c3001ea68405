from __future__ import annotations

from fastapi import HTTPException, Request

STAFF_ROLES = ("ADMIN", "AGENT")


def get_role_from_request(request: Request) -> str:
    # Header shim only; real deployments put an identity provider in front.
    return request.headers.get("X-Role", "CUSTOMER").upper()


def get_operator_id(request: Request) -> str:
    return request.headers.get("X-Operator-Id", "").strip() or "operator"


def require_role(*allowed_roles: str):
    allowed = {r.upper() for r in allowed_roles}

    async def _dependency(request: Request) -> str:
        role = get_role_from_request(request)
        if allowed and role not in allowed:
            raise HTTPException(status_code=403, detail="forbidden")
        return role

    return _dependency
