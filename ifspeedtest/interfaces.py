"""Egress interface lookup and per-target source binding."""

import ipaddress
import logging
import socket
from typing import Callable

import psutil

from ifspeedtest.models import EgressBinding, Target

logger = logging.getLogger(__name__)

DEFAULT_LABEL = "default"

_FAMILIES = {4: socket.AF_INET, 6: socket.AF_INET6}


def _usable(address: str) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return not (ip.is_loopback or ip.is_link_local or ip.is_unspecified)


class InterfaceResolver:
    """Resolves a requested egress interface into an EgressBinding.

    A binding is only used when the device exists and has a usable address of
    the target's family; otherwise the run degrades to unbound with a warning.
    """

    def __init__(self, net_if_addrs: Callable[[], dict] = psutil.net_if_addrs):
        self._net_if_addrs = net_if_addrs

    def names(self) -> list[str]:
        """All interface names known to the system, sorted."""
        return sorted(self._net_if_addrs())

    def exists(self, name: str) -> bool:
        return name in self._net_if_addrs()

    def source_address(self, name: str, family: int) -> str | None:
        """First global or private address of ``family`` (4 or 6) on ``name``."""
        addrs = self._net_if_addrs().get(name, [])
        wanted = _FAMILIES[family]
        for addr in addrs:
            if addr.family != wanted:
                continue
            # psutil reports IPv6 link scope as a "%iface" suffix.
            address = addr.address.split("%", 1)[0]
            if _usable(address):
                return address
        return None

    def resolve(self, requested: str | None, target: Target) -> EgressBinding:
        """Bind to ``requested`` for ``target``; never raises for a bad interface."""
        if not requested:
            return EgressBinding(requested=None, device=None, source_address=None, label=DEFAULT_LABEL)

        if not self.exists(requested):
            warning = f"egress: interface '{requested}' not found; running unbound (default route)."
            logger.info(warning)
            return self._unbound(requested, warning)

        source = self.source_address(requested, target.family)
        if source is None:
            warning = (
                f"egress: interface '{requested}' has no IPv{target.family} address; "
                "running unbound (default route)."
            )
            logger.info(warning)
            return self._unbound(requested, warning)

        logger.debug("Bound egress: interface=%s, source=%s, target=%s", requested, source, target.address)
        return EgressBinding(
            requested=requested, device=requested, source_address=source, label=requested
        )

    @staticmethod
    def _unbound(requested: str, warning: str) -> EgressBinding:
        return EgressBinding(
            requested=requested,
            device=None,
            source_address=None,
            label=f"{requested} (unbound)",
            warnings=(warning,),
        )
