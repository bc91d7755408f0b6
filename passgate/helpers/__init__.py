import datetime
from typing import Optional
from urllib.parse import urlparse, parse_qs

from fastapi import Request
from ua_parser import user_agent_parser

from passgate.core.config import settings
from passgate.core.exceptions import InsecureTransportError
from passgate.core.relying_party import clean_host, is_loopback


async def get_remote_address(request: Request, default_ip: str = "127.0.0.1", use_cf_connecting_ip: bool = True,
                             other_ip_headers: list = None):
    """
    Retrieves the remote address of the client making the request. By default, it
    returns the IP address contained in the `CF-Connecting-IP` header if present,
    then any of `other_ip_headers` (ex ["X-Forwarded-For"]), then the client's
    host IP, and finally `default_ip`.

    :param request: The incoming HTTP request.
    :return: The remote IP address as a string.
    """
    if use_cf_connecting_ip:
        if request.headers.get("CF-Connecting-IP"):
            return request.headers.get("CF-Connecting-IP")
    if other_ip_headers:
        for header in other_ip_headers:
            if request.headers.get(header):
                return request.headers.get(header)
    if not request.client or not request.client.host:
        return default_ip
    return request.client.host


async def user_agent_to_human_readable(user_agent):
    """
    Converts a user agent string into "<browser> on <os>".

    :param user_agent: The user agent string to parse.
    :return: A human-readable string describing the browser family and the
        operating system family.
    """
    device = user_agent_parser.Parse(user_agent or "")
    return device["user_agent"]["family"] + " on " + device["os"]["family"]


async def credential_title(credential) -> str:
    created = datetime.datetime.fromtimestamp(credential.created_at, tz=datetime.timezone.utc)
    title = f"Passkey created {created.strftime('%Y-%m-%d')}"
    if credential.last_user_agent:
        title += f" ({await user_agent_to_human_readable(credential.last_user_agent)})"
    return title


def get_request_host(request: Request) -> str:
    return clean_host(request.headers.get("host") or request.url.netloc)


def get_expected_origin(request: Request) -> str:
    """The origin the browser reports for a page served by this request."""
    netloc = request.headers.get("host") or request.url.netloc
    return f"{request.url.scheme}://{netloc}".lower()


def is_development_host(host: str) -> bool:
    host = clean_host(host)
    return is_loopback(host) or host.endswith(".local")


def ensure_secure_transport(request: Request):
    """
    WebAuthn only works in a secure context. Plain http is refused unless the
    host is a development host or the check is switched off.
    """
    if not settings.PASSKEY_REQUIRE_HTTPS:
        return
    if request.url.scheme == "https" or is_development_host(get_request_host(request)):
        return
    raise InsecureTransportError("Passkeys require HTTPS.")


def sanitize_back_url(url: Optional[str]) -> Optional[str]:
    """
    Accepts only site-relative paths so a login can never redirect off-site.
    """
    if not url or not isinstance(url, str):
        return None
    url = url.strip()
    if not url.startswith("/") or url.startswith("//") or "\\" in url:
        return None
    parsed = urlparse(url)
    if parsed.scheme or parsed.netloc:
        return None
    return url


def back_url_from_request(request: Request) -> Optional[str]:
    """
    Reads BackURL from the query string, or from the query string of the
    referring page (login forms usually carry it there).
    """
    back_url = sanitize_back_url(request.query_params.get("BackURL"))
    if back_url:
        return back_url
    referer = request.headers.get("referer")
    if referer:
        values = parse_qs(urlparse(referer).query).get("BackURL")
        if values:
            return sanitize_back_url(values[0])
    return None
