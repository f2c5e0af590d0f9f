"""Signup and login form endpoints.

Both take form posts. A successful submission answers with a 303 redirect
that carries the session cookie; anything else returns the form state as
JSON so the page can render field errors.
"""

import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from core.audit import AuditTrail
from core.config import Settings, get_settings
from core.database import get_db
from core.exceptions import SignupRedirect
from core.security import create_access_token
from schemas.auth import FormState
from services.login_service import INVALID_CREDENTIALS, LoginService
from services.signup_orchestrator import SignupOrchestrator

logger = logging.getLogger(__name__)
router = APIRouter()


def _redirect(redirect: SignupRedirect, settings: Settings) -> RedirectResponse:
    response = RedirectResponse(redirect.url, status_code=status.HTTP_303_SEE_OTHER)
    if redirect.user_id:
        token = create_access_token({"sub": redirect.user_id}, settings=settings)
        response.set_cookie(
            settings.SESSION_COOKIE_NAME,
            token,
            max_age=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            httponly=True,
            secure=settings.ENVIRONMENT == "production",
            samesite="lax",
        )
    return response


def _form_response(state: FormState, status_code: int) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=state.model_dump())


async def _form_data(request: Request) -> dict:
    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


@router.post("/signup")
async def signup(
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Create an account, set up billing and link a pending channel."""
    orchestrator = SignupOrchestrator(db, settings, AuditTrail())
    try:
        state = await orchestrator.sign_up(await _form_data(request))
    except SignupRedirect as redirect:
        return _redirect(redirect, settings)
    return _form_response(state, status.HTTP_400_BAD_REQUEST)


@router.post("/login")
async def login(
    request: Request,
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Log in, linking the channel from ``channel``/``link`` when present."""
    service = LoginService(db, settings, AuditTrail())
    try:
        state = await service.log_in(await _form_data(request))
    except SignupRedirect as redirect:
        return _redirect(redirect, settings)
    if state.message == INVALID_CREDENTIALS:
        return _form_response(state, status.HTTP_401_UNAUTHORIZED)
    return _form_response(state, status.HTTP_400_BAD_REQUEST)
