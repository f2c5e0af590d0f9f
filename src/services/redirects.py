"""Builders for the local redirect URLs used after signup and login."""

from typing import Any, Dict, Optional
from urllib.parse import urlencode, urlsplit

from core.config import Settings, get_settings


class RedirectPaths:
    LOGIN = "/login"
    SIGNUP = "/signup"
    SIGNUP_COMPLETE = "/signup/complete"
    DASHBOARD = "/dashboard"
    CHANNELS = "/dashboard/channels"


def _localized(path: str, locale: Optional[str], settings: Settings) -> str:
    if locale and locale in settings.SUPPORTED_LOCALES:
        return f"/{locale}{path}"
    return path


def build_redirect_url(
    path: str,
    params: Optional[Dict[str, Any]] = None,
    locale: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> str:
    """Join a path and query params, dropping params that are None.

    Values are percent-encoded but otherwise passed through unchanged, so
    channel and link parameters survive a redirect exactly as received.
    """
    settings = settings or get_settings()
    url = _localized(path, locale, settings)
    query = {k: v for k, v in (params or {}).items() if v is not None}
    if query:
        url = f"{url}?{urlencode(query)}"
    return url


def build_login_redirect_url(
    channel: Optional[str] = None,
    link: Optional[str] = None,
    message: Optional[str] = None,
    locale: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> str:
    return build_redirect_url(
        RedirectPaths.LOGIN,
        {"channel": channel, "link": link, "message": message},
        locale,
        settings,
    )


def build_signup_complete_redirect_url(
    channel: Optional[str] = None,
    link: Optional[str] = None,
    channel_linked: Optional[bool] = None,
    channel_error: bool = False,
    show_fallback: bool = False,
    locale: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> str:
    params: Dict[str, Any] = {"channel": channel, "link": link}
    if channel_linked is not None:
        params["channelLinked"] = "true" if channel_linked else "false"
    if channel_error:
        params["channel_error"] = "true"
    if show_fallback:
        params["show_fallback"] = "true"
    return build_redirect_url(RedirectPaths.SIGNUP_COMPLETE, params, locale, settings)


def build_dashboard_redirect_url(
    channel: Optional[str] = None,
    channel_linked: Optional[bool] = None,
    skip_onboarding: bool = False,
    channel_error: bool = False,
    locale: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> str:
    params: Dict[str, Any] = {"channel": channel}
    if channel_linked is not None:
        params["channelLinked"] = "true" if channel_linked else "false"
    if skip_onboarding:
        params["skipOnboarding"] = "true"
    if channel_error:
        params["channel_error"] = "true"
    return build_redirect_url(RedirectPaths.DASHBOARD, params, locale, settings)


def is_valid_redirect_url(url: Optional[str]) -> bool:
    """Only same-site absolute paths are acceptable redirect targets."""
    if not url or not url.startswith("/") or url.startswith("//"):
        return False
    parts = urlsplit(url)
    return not parts.scheme and not parts.netloc and "\\" not in url
