from fastapi import FastAPI, Request
from starlette.responses import Response

API_HEADERS = {
    'X-Robots-Tag': 'noindex, nofollow, noarchive',
    'X-Content-Type-Options': 'nosniff',
    'X-Frame-Options': 'DENY',
    'Referrer-Policy': 'no-referrer',
}


def install_security_headers(app: FastAPI) -> None:
    """Role views are per caller, so nothing the API returns may be cached or framed."""

    @app.middleware('http')
    async def add_security_headers(request: Request, call_next):
        response: Response = await call_next(request)
        for name, value in API_HEADERS.items():
            response.headers.setdefault(name, value)
        response.headers.setdefault('Cache-Control', 'no-store')
        if response.headers.get('content-type', '').startswith('text/event-stream'):
            # proxies must flush each event as it is written
            response.headers['X-Accel-Buffering'] = 'no'
        return response
