from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Iterable, Optional, Union

from blogauth.config import HijackMode
from blogauth.logging import get_logger
from blogauth.storage.models import Session

logger = get_logger(__name__)


@dataclass(frozen=True)
class RequestContext:
    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class HijackVerdict:
    ok: bool
    violation: bool = False
    ip_mismatch: bool = False
    # "ip_mismatch" or "ip_not_allowed" when not ok
    reason: Optional[str] = None
    # revoke the session as well as rejecting the request
    revoke: bool = False


def normalize_ip(
    value: Optional[str],
) -> Optional[Union[ipaddress.IPv4Address, ipaddress.IPv6Address]]:
    if not value:
        return None
    try:
        addr = ipaddress.ip_address(value.strip())
    except ValueError:
        return None
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    return addr


class HijackDetector:
    """Compares the request origin with the address recorded on the session."""

    def __init__(self, mode: HijackMode, allowlist: Iterable[str] = ()) -> None:
        self.mode = HijackMode(mode)
        self._allowlist = {ip for ip in (normalize_ip(v) for v in allowlist) if ip}

    def check(self, session: Session, ctx: Optional[RequestContext]) -> HijackVerdict:
        request_ip = normalize_ip(ctx.ip_addr if ctx else None)

        if self._allowlist and request_ip is not None and request_ip not in self._allowlist:
            logger.warning(
                "session_ip_not_allowed",
                session_id=session.id,
                user_id=session.user_id,
                ip=str(request_ip),
            )
            return HijackVerdict(ok=False, violation=True, reason="ip_not_allowed")

        session_ip = normalize_ip(session.ip_addr)
        if request_ip is None or session_ip is None or request_ip == session_ip:
            return HijackVerdict(ok=True)

        logger.warning(
            "session_ip_mismatch",
            session_id=session.id,
            user_id=session.user_id,
            session_ip=str(session_ip),
            request_ip=str(request_ip),
            mode=self.mode.value,
        )
        if self.mode == HijackMode.STRICT:
            return HijackVerdict(
                ok=False,
                violation=True,
                ip_mismatch=True,
                reason="ip_mismatch",
                revoke=True,
            )
        return HijackVerdict(ok=True, ip_mismatch=True)
