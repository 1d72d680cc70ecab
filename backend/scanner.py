# backend/scanner.py
from __future__ import annotations

import http.client
import logging
import socket
import ssl
import urllib.error
import urllib.request
from typing import Callable, Dict, List, Optional, Tuple

from cryptography import x509
from cryptography.hazmat.backends import default_backend

from errors import ProtocolSessionError
from h2client import H2ClientSession
from record import Site
from settings import ProbeSettings
from spdy import SpdyClientSession
from tristate import Tri

SPDY_PROTOCOL = "spdy/3.1"
HTTP2_PROTOCOL = "h2"

# Offered during the main handshake. Whatever the server selects is recorded
# and removed, and the handshake repeated, until the server picks nothing.
ALPN_CANDIDATES = [HTTP2_PROTOCOL, SPDY_PROTOCOL, "spdy/3", "http/1.1"]

# protocol -> (client session class, label used in diagnostics)
SESSION_FACTORIES: Dict[str, Tuple[Callable, str]] = {
    SPDY_PROTOCOL: (SpdyClientSession, "SPDY"),
    HTTP2_PROTOCOL: (H2ClientSession, "HTTP/2"),
}


def _make_context(settings: ProbeSettings, alpn: Optional[List[str]] = None) -> ssl.SSLContext:
    ctx = ssl.create_default_context(cafile=settings.cafile)
    if alpn:
        ctx.set_alpn_protocols(alpn)
    return ctx


def _base_url(name: str, port: int) -> str:
    if port == 443:
        return f"https://{name}/"
    return f"https://{name}:{port}/"


# -----------------------------
# Network primitives
# -----------------------------

def _resolve(name: str) -> List[str]:
    infos = socket.getaddrinfo(name, None, proto=socket.IPPROTO_TCP)
    addrs = [str(info[4][0]) for info in infos]
    if not addrs:
        raise OSError(f"no addresses for {name}")
    return addrs


def _dial(name: str, port: int, settings: ProbeSettings) -> None:
    with socket.create_connection((name, port), timeout=settings.connect_timeout):
        pass


def _tls_connect(name: str, port: int, settings: ProbeSettings, alpn: Optional[List[str]] = None) -> ssl.SSLSocket:
    """Connected, handshaken TLS socket with SNI = name. Caller closes it."""
    ctx = _make_context(settings, alpn)
    sock = socket.create_connection((name, port), timeout=settings.connect_timeout)
    try:
        sock.settimeout(settings.socket_timeout)
        return ctx.wrap_socket(sock, server_hostname=name)
    except BaseException:
        sock.close()
        raise


def _tls_probe(name: str, port: int, settings: ProbeSettings) -> Tuple[Optional[str], Optional[bytes]]:
    """Handshake offering every candidate; returns (selected protocol, leaf DER)."""
    with _tls_connect(name, port, settings, ALPN_CANDIDATES) as ssock:
        return ssock.selected_alpn_protocol(), ssock.getpeercert(binary_form=True)


def _enumerate_protocols(name: str, port: int, settings: ProbeSettings, selected: Optional[str], log: logging.LoggerAdapter) -> List[str]:
    offered: List[str] = []
    remaining = list(ALPN_CANDIDATES)

    while selected and selected in remaining:
        offered.append(selected)
        remaining.remove(selected)
        if not remaining:
            break
        try:
            with _tls_connect(name, port, settings, remaining) as ssock:
                selected = ssock.selected_alpn_protocol()
        except OSError as e:
            # servers may abort when nothing overlaps
            log.debug("Protocol enumeration stopped: %s", e)
            break

    return offered


def _https_get(name: str, port: int, settings: ProbeSettings) -> int:
    """GET / over HTTP/1.1. Any HTTP status counts as a response."""
    ctx = _make_context(settings)
    req = urllib.request.Request(_base_url(name, port), method="GET")
    try:
        with urllib.request.urlopen(req, timeout=settings.socket_timeout, context=ctx) as resp:
            resp.read()
            return int(getattr(resp, "status", None) or resp.getcode())
    except urllib.error.HTTPError as e:
        try:
            e.read()
        finally:
            e.close()
        return int(e.code)


def _log_certificate(der: Optional[bytes], log: logging.LoggerAdapter) -> None:
    if not der:
        return
    try:
        cert = x509.load_der_x509_certificate(der, default_backend())
    except ValueError as e:
        log.debug("Could not parse peer certificate: %s", e)
        return
    not_after = getattr(cert, "not_valid_after_utc", None) or getattr(cert, "not_valid_after", None)
    log.debug(
        "Certificate subject=%s issuer=%s not_after=%s",
        cert.subject.rfc4514_string(),
        cert.issuer.rfc4514_string(),
        not_after.isoformat() if not_after else "",
    )


# -----------------------------
# Stages
# -----------------------------

def _check_resolves(site: Site, log: logging.LoggerAdapter) -> bool:
    try:
        _resolve(site.name)
    except (OSError, UnicodeError) as e:
        log.warning("Error resolving name: %s", e)
        site.resolves = Tri.FALSE
        return False
    site.resolves = Tri.TRUE
    return True


def _check_port_open(site: Site, settings: ProbeSettings, log: logging.LoggerAdapter) -> bool:
    try:
        _dial(site.name, settings.port, settings)
    except OSError as e:
        log.warning("TCP dial to port %d failed: %s", settings.port, e)
        site.port443_open = Tri.FALSE
        return False
    site.port443_open = Tri.TRUE
    return True


def _check_tls(site: Site, settings: ProbeSettings, log: logging.LoggerAdapter) -> bool:
    """
    Handshake with SNI = name. A failure is often a certificate issued only
    for the www. host, so the name is rewritten and tried once more; the
    rewrite sticks for the rest of the probe and the reported record.
    """
    try:
        selected, der = _tls_probe(site.name, settings.port, settings)
    except OSError as first_err:
        log.info("TLS connection failed (%s), retrying as www.%s", first_err, site.name)
        site.name = "www." + site.name
        try:
            selected, der = _tls_probe(site.name, settings.port, settings)
        except OSError as e:
            log.warning("Error performing TLS connection: %s", e)
            site.tls_works = Tri.FALSE
            return False

    site.tls_works = Tri.TRUE
    _log_certificate(der, log)
    site.offered = _enumerate_protocols(site.name, settings.port, settings, selected, log)
    return True


def _check_https(site: Site, settings: ProbeSettings, log: logging.LoggerAdapter) -> None:
    try:
        status = _https_get(site.name, settings.port, settings)
    except (OSError, http.client.HTTPException, ValueError) as e:
        # URLError is an OSError
        log.warning("HTTP request failed: %s", e)
        site.https_works = Tri.FALSE
        return
    log.debug("HTTP request returned status %d", status)
    site.https_works = Tri.TRUE


def _check_alternate(site: Site, protocol: str, settings: ProbeSettings, log: logging.LoggerAdapter) -> Tri:
    """
    GET / over a connection that negotiates only `protocol`.

    A dial or request failure is FALSE. A server that negotiates something
    else, or a session that cannot be set up, leaves the stage NOT_ATTEMPTED.
    """
    factory, label = SESSION_FACTORIES[protocol]

    try:
        ssock = _tls_connect(site.name, settings.port, settings, [protocol])
    except OSError as e:
        log.warning("Failed to dial port %d for %s: %s", settings.port, label, e)
        return Tri.FALSE

    with ssock:
        negotiated = ssock.selected_alpn_protocol()
        if negotiated != protocol:
            log.warning("NegotiatedProtocol not %s: %s", protocol, negotiated or "")
            return Tri.NOT_ATTEMPTED

        try:
            session = factory(ssock, site.name, settings.port)
        except (OSError, ProtocolSessionError) as e:
            log.warning("Failed create %s client connection: %s", label, e)
            return Tri.NOT_ATTEMPTED

        with session:
            try:
                session.get("/")
            except (OSError, ProtocolSessionError) as e:
                log.warning("%s request failed: %s", label, e)
                return Tri.FALSE

    return Tri.TRUE


def probe_site(site: Site, settings: ProbeSettings, log: logging.LoggerAdapter) -> Site:
    """
    Run the escalating checks against one site, filling in its tri-states.

    Resolution, port 443 and TLS each gate everything after them. The HTTPS
    request does not gate anything; the SPDY and HTTP/2 requests are gated
    only on their protocol having been offered.
    """
    if not _check_resolves(site, log):
        return site

    if not _check_port_open(site, settings, log):
        return site

    if not _check_tls(site, settings, log):
        return site

    site.spdy_announced = Tri.of(SPDY_PROTOCOL in site.offered)
    site.http2_announced = Tri.of(HTTP2_PROTOCOL in site.offered)

    _check_https(site, settings, log)

    if site.spdy_announced:
        site.spdy_works = _check_alternate(site, SPDY_PROTOCOL, settings, log)

    if site.http2_announced:
        site.http2_works = _check_alternate(site, HTTP2_PROTOCOL, settings, log)

    return site
