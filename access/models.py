"""
access/models.py -- Domain dataclasses for the access rule table.

Optional fields (template, action, redirects) are None in Python. On disk
they are the "-" sentinel; the conversion lives only in access/store.py.
"""

from __future__ import annotations

from dataclasses import dataclass, field

GET = "GET"
POST = "POST"
ANY_METHOD = "All"


@dataclass
class RequestRule:
    """One routable (method, url) pair and what to do with it.

    url is the normalized form (no leading slash, lower case, "index" for
    the root). parent is the (method, url) of the section this request
    belongs to; it is resolved to parent_id when the row is inserted.
    """

    method: str
    url: str
    controller: str
    template: str | None = None
    action: str | None = None
    redirect_url: str | None = None
    redirect_on_error: str | None = None
    index_level: int | None = None
    order_number: int | None = None
    fire_event: bool = True
    parent: tuple[str, str] | None = None
    parent_id: int | None = None
    id: int | None = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.method, self.url)


@dataclass
class AccessRule:
    """Catalog entry: localized names and required roles for one request."""

    url: str
    names: dict[str, str] = field(default_factory=dict)
    roles: tuple[str, ...] = ()


@dataclass
class ResolvedRequest:
    """What the resolver hands the dispatcher: the rule plus its display title."""

    rule: RequestRule
    title: str | None = None
