import logging
from pathlib import Path

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.templating import Jinja2Templates

from app.config import settings
from app.routers import audit, auth, items, receipts, reports, requisitions, returns, users
from app.security.csrf import install_csrf_cookie_middleware
from app.security.headers import install_security_headers

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
    datefmt='%Y-%m-%dT%H:%M:%SZ',
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name)

TEMPLATE_DIR = Path(__file__).resolve().parent / 'templates'
app.state.templates = Jinja2Templates(directory=str(TEMPLATE_DIR))


@app.exception_handler(Exception)
async def unhandled_exception(request: Request, exc: Exception):
    logger.exception('Unhandled exception on %s %s', request.method, request.url.path)
    if settings.is_production:
        return JSONResponse(status_code=500, content={'detail': 'Internal server error'})
    return JSONResponse(status_code=500, content={'detail': str(exc)})


install_security_headers(app)
install_csrf_cookie_middleware(app)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list(),
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

app.include_router(auth.router)
app.include_router(users.router)
app.include_router(items.router)
app.include_router(receipts.router)
app.include_router(requisitions.router)
app.include_router(returns.router)
app.include_router(reports.router)
app.include_router(audit.router)


@app.get('/health')
def health() -> dict:
    return {'status': 'ok', 'environment': settings.environment}


@app.get('/robots.txt', response_class=PlainTextResponse)
def robots_txt() -> str:
    return 'User-agent: *\nDisallow: /\n'
