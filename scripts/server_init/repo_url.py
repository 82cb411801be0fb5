"""Build the authenticated fetch URL for a repository.

The authenticated form is only ever handed to a single git clone/fetch
invocation.  What gets recorded as ``origin`` is the plain URL.
"""
from __future__ import annotations

import re
from urllib.parse import quote

from scripts.server_init.app_spec import Credentials


ARCHIVE_SUFFIX = ".git"
TOKEN_ONLY_HOST_MARKERS = ("bitbucket",)
TOKEN_AUTH_USER = "x-token-auth"
REDACTED = "***"

_HTTPS_URL_PATTERN = re.compile(r"^https://([^/]+)/(.+)$")


def _split_url(url: str) -> tuple[str, str, str, str] | None:
    """Return (username, secret, host, path) for an https URL, else None."""
    match = _HTTPS_URL_PATTERN.match(url)
    if not match:
        return None
    netloc, path = match.group(1), match.group(2)
    username = ""
    secret = ""
    host = netloc
    if "@" in netloc:
        userinfo, host = netloc.rsplit("@", 1)
        username, _, secret = userinfo.partition(":")
    return username, secret, host, path


def _strip_suffix(path: str) -> str:
    if path.endswith(ARCHIVE_SUFFIX):
        return path[: -len(ARCHIVE_SUFFIX)]
    return path


def _enc(value: str) -> str:
    return quote(value, safe="")


def is_token_only_host(host: str) -> bool:
    lowered = host.lower()
    return any(marker in lowered for marker in TOKEN_ONLY_HOST_MARKERS)


def compose_authenticated_url(url: str, credentials: Credentials | None = None) -> str:
    """Embed *credentials* into *url*; first matching rule wins.

    Exactly one authentication form ends up in the result, or none.  URLs
    that do not look like ``https://host/path`` come back unchanged.
    """
    creds = credentials or Credentials()
    parts = _split_url(url)
    if parts is None:
        return url
    embedded_user, _, host, path = parts
    path = _strip_suffix(path)

    if embedded_user and creds.has_token:
        userinfo = f"{embedded_user}:{_enc(creds.token)}"
    elif not embedded_user and creds.has_token and is_token_only_host(host):
        userinfo = f"{TOKEN_AUTH_USER}:{_enc(creds.token)}"
    elif creds.has_token:
        userinfo = _enc(creds.token)
    elif creds.has_user_password:
        userinfo = f"{_enc(creds.username)}:{_enc(creds.password)}"
    else:
        return url

    return f"https://{userinfo}@{host}/{path}{ARCHIVE_SUFFIX}"


def plain_url(url: str) -> str:
    """Drop any password/token from *url*, keeping a bare embedded username."""
    parts = _split_url(url)
    if parts is None:
        return url
    username, secret, host, path = parts
    if not secret:
        return url
    return f"https://{username}@{host}/{path}"


def has_embedded_secret(url: str) -> bool:
    parts = _split_url(url)
    return bool(parts and parts[1])


def same_repository(left: str, right: str) -> bool:
    """True when both URLs point at the same host/path, ignoring auth and suffix."""
    a = _split_url(left)
    b = _split_url(right)
    if a is None or b is None:
        return left == right
    return (a[2].lower(), _strip_suffix(a[3])) == (b[2].lower(), _strip_suffix(b[3]))


def redact_url(url: str) -> str:
    parts = _split_url(url)
    if parts is None:
        return url
    username, secret, host, path = parts
    if secret:
        return f"https://{username}:{REDACTED}@{host}/{path}"
    return url


def redact_secrets(text: str, credentials: Credentials | None = None) -> str:
    """Mask credential values (raw and URL-encoded) and URL passwords in *text*."""
    out = str(text or "")
    if credentials is not None:
        for secret in credentials.secrets():
            out = out.replace(_enc(secret), REDACTED).replace(secret, REDACTED)
    return re.sub(r"(https://[^/\s:@]+):[^/\s@]+@", rf"\1:{REDACTED}@", out)
