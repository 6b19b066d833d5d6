from __future__ import annotations

import asyncio
import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from printshop.auth import Principal, Role, require_role
from printshop.db import get_db
from printshop.logging_config import get_logger
from printshop.services.sync_service import ViewSynchronizer, fetch_role_view, make_view_fetcher

router = APIRouter(prefix='/sync', tags=['sync'])
logger = get_logger(__name__)

KEEPALIVE_SECONDS = 15.0

any_role = require_role(Role.INTAKE, Role.CASHIER, Role.OPERATOR)


def _sse(event: str, data: dict) -> str:
    return f'event: {event}\ndata: {json.dumps(data, default=str)}\n\n'


@router.get('/view')
def current_view(
    principal: Principal = Depends(any_role),
    db: Session = Depends(get_db),
):
    return fetch_role_view(db, principal)


@router.get('/events')
async def view_events(request: Request, principal: Principal = Depends(any_role)):
    """Stream the caller's full view on connect and again after every relevant commit."""
    loop = asyncio.get_running_loop()
    stale = asyncio.Event()
    views: asyncio.Queue[dict] = asyncio.Queue()

    synchronizer = ViewSynchronizer(
        request.app.state.change_feed,
        role=principal.role,
        fetch_view=make_view_fetcher(request.app.state.session_factory, principal),
        on_view=lambda view: loop.call_soon_threadsafe(views.put_nowait, view),
        trigger=lambda: loop.call_soon_threadsafe(stale.set),
    )

    async def stream():
        await run_in_threadpool(synchronizer.start)
        logger.info('View stream opened', extra={'extra_fields': {'role': principal.role.value}})
        try:
            while True:
                while not views.empty():
                    yield _sse('view', views.get_nowait())
                if await request.is_disconnected():
                    break
                try:
                    await asyncio.wait_for(stale.wait(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ': keepalive\n\n'
                    continue
                stale.clear()
                await run_in_threadpool(synchronizer.refresh)
        finally:
            synchronizer.stop()
            logger.info('View stream closed', extra={'extra_fields': {'role': principal.role.value}})

    return StreamingResponse(stream(), media_type='text/event-stream', headers={'Cache-Control': 'no-store'})
