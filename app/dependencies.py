from fastapi import HTTPException, Request, status
from fastapi.templating import Jinja2Templates

from app.services.errors import NotFoundError


def service_error(exc: Exception) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, PermissionError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc) or 'Access denied')
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))


def get_templates(request: Request) -> Jinja2Templates:
    return request.app.state.templates


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None


def get_user_agent(request: Request) -> str | None:
    user_agent = request.headers.get('user-agent')
    return user_agent[:500] if user_agent else None
