# backend/record.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from tristate import Tri

# Output columns, in order. The tri-state columns share their names with the
# Site attributes below.
FIELDS = (
    "name",
    "resolves",
    "port443Open",
    "tlsWorks",
    "httpsWorks",
    "spdyAnnounced",
    "http2Announced",
    "spdyWorks",
    "http2Works",
    "npn",
)

TRI_ATTRS = (
    "resolves",
    "port443_open",
    "tls_works",
    "https_works",
    "spdy_announced",
    "http2_announced",
    "spdy_works",
    "http2_works",
)


@dataclass
class Site:
    """
    A web site identified by its DNS name plus the outcome of every probe
    stage. Stages are only filled in once probe_site() has run on it.

    `name` is the effective name and may gain a "www." prefix during the TLS
    stage; `requested` always holds the input line.
    """

    name: str
    requested: str = ""

    resolves: Tri = Tri.NOT_ATTEMPTED
    port443_open: Tri = Tri.NOT_ATTEMPTED
    tls_works: Tri = Tri.NOT_ATTEMPTED
    https_works: Tri = Tri.NOT_ATTEMPTED
    spdy_announced: Tri = Tri.NOT_ATTEMPTED
    http2_announced: Tri = Tri.NOT_ATTEMPTED
    spdy_works: Tri = Tri.NOT_ATTEMPTED
    http2_works: Tri = Tri.NOT_ATTEMPTED

    # Protocols offered by the server during the TLS handshake
    offered: List[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.requested:
            self.requested = self.name

    @property
    def renamed(self) -> bool:
        return self.name != self.requested

    def tristates(self) -> List[Tri]:
        return [getattr(self, a) for a in TRI_ATTRS]


def header_line() -> str:
    return ",".join(FIELDS)


def format_site(site: Site) -> str:
    parts = [site.name]
    parts.extend(str(t) for t in site.tristates())
    parts.append(" ".join(site.offered))
    return ",".join(parts)
