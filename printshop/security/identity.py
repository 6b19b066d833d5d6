from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from printshop.auth import Principal, Role
from printshop.config import settings
from printshop.logging_config import set_request_context
from printshop.models import Principal as PrincipalModel


AUTH_EXEMPT_PATHS = {'/health', '/robots.txt', '/docs', '/openapi.json'}


def load_principal_for_identity(db: Session, identity: str | None) -> Principal | None:
    if not identity:
        return None

    principal = db.execute(
        select(PrincipalModel).where(PrincipalModel.identity == identity.strip())
    ).scalar_one_or_none()
    if not principal:
        return None

    role = Role(principal.role.value if hasattr(principal.role, 'value') else principal.role)
    return Principal(
        id=principal.id,
        identity=principal.identity,
        full_name=principal.full_name,
        role=role,
        active=principal.active,
    )


def install_identity_middleware(app: FastAPI, session_factory: sessionmaker) -> None:
    """Resolve the identity forwarded by the upstream identity provider to a role assignment."""

    @app.middleware('http')
    async def identity_middleware(request: Request, call_next):
        identity = request.headers.get(settings.identity_header)
        with session_factory() as db:
            request.state.principal = load_principal_for_identity(db, identity)

        if request.state.principal is not None:
            set_request_context(identity=request.state.principal.identity)
        elif request.url.path not in AUTH_EXEMPT_PATHS:
            return JSONResponse(
                status_code=401,
                content={'error': 'unauthenticated', 'category': 'authorization', 'detail': 'Unknown identity'},
            )

        return await call_next(request)
