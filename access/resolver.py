"""
access/resolver.py -- Turn an identity and a raw request path into an authorized rule.

Nonexistent and forbidden requests both raise AccessDenied with the same
message, so callers cannot tell them apart and neither can the user.
"""

from __future__ import annotations

import logging

from access.models import ResolvedRequest
from access.store import RequestStore
from auth.errors import AccessDenied
from auth.roles import ALL

logger = logging.getLogger("membership.access")

BASE_LANGUAGE = "EN"


def base_path(path: str) -> str:
    """Lower-case path, drop the query and fragment, strip trailing '/', '#', '?'.

    A lone "/" is kept. The cut point is the first '?' or the last '#',
    whichever comes first.
    """
    url = path.lower()
    cuts = [i for i in (url.find("?"), url.rfind("#")) if i > 0]
    if len(url) > 1 and cuts:
        url = url[: min(cuts)]
    while len(url) > 1 and url[-1] in "/#?":
        url = url[:-1]
    return url


def normalize_url(path: str) -> str:
    """Map a raw request path to the key stored in request.request_url.

    "/" and "" become "index". Otherwise the leading "/" is dropped and one
    ".html" suffix is removed: "/About.html?x=1" -> "about".
    """
    url = base_path(path)
    if url in ("", "/"):
        return "index"
    if url.startswith("/"):
        url = url[1:]
    return url.replace(".html", "", 1)


class RequestResolver:
    """Resolves (identity, method, path) against the access rule table.

    Usage:
        resolver = RequestResolver(request_store)
        resolved = resolver.resolve(session.username, "GET", "/about")
    """

    def __init__(self, request_store: RequestStore, base_language: str = BASE_LANGUAGE) -> None:
        self.requests = request_store
        self.base_language = base_language

    def resolve(
        self, username: str | None, method: str, path: str, language: str | None = None
    ) -> ResolvedRequest:
        """Return the authorized rule and its localized title.

        username None (or empty) is an anonymous caller, who only reaches
        requests granted to the All role. The title falls back to the base
        language, then None.
        """
        url = normalize_url(path)
        languages = tuple(dict.fromkeys(lang for lang in (language, self.base_language) if lang))
        resolved = self.requests.find_authorized(username or None, ALL, method.upper(), url, languages)
        if resolved is None:
            logger.debug("No authorized request for %s %s (user=%r)", method, url, username)
            raise AccessDenied(f'request "{url}" - not found or access denied')
        return resolved
