"""Target validation, DNS resolution and targets-file parsing."""

import ipaddress
import logging
import re
import socket
from pathlib import Path
from typing import Callable

from ifspeedtest.errors import InvalidTarget
from ifspeedtest.models import Target

logger = logging.getLogger(__name__)

_LABEL = r"[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?"
_DOMAIN = re.compile(rf"^(?=.{{1,253}}$){_LABEL}(?:\.{_LABEL})*$")
_DOTTED_QUAD = re.compile(r"^\d{1,3}(\.\d{1,3}){3}$")

_AF = {"auto": socket.AF_UNSPEC, "4": socket.AF_INET, "6": socket.AF_INET6}


def parse_targets_file(path: Path) -> list[tuple[str, str]]:
    """Read ``(target, note)`` pairs from a targets file.

    One target per line. Blank lines and lines starting with ``#`` are
    skipped; an inline ``# comment`` after a target becomes its note.

    Raises:
        OSError: if the file cannot be read
    """
    entries = []
    for line in path.read_text(encoding="utf-8").splitlines():
        raw = line.strip()
        if not raw or raw.startswith("#"):
            continue
        note = ""
        if "#" in raw:
            raw, _, body = raw.partition("#")
            raw = raw.strip()
            body = body.strip()
            if body:
                note = f"# {body}"
        if raw:
            entries.append((raw, note))
    return entries


class TargetResolver:
    """Turns user input into a Target, caching DNS answers for the run.

    The family preference ('auto', '4' or '6') only applies to domains;
    literal addresses are used as given.
    """

    def __init__(
        self,
        family: str = "auto",
        resolver: Callable[..., list] = socket.getaddrinfo,
        reverse: Callable[[str], tuple] | None = socket.gethostbyaddr,
    ):
        self.family = family
        self._resolver = resolver
        self._reverse = reverse
        self._cache: dict[tuple[str, str], str] = {}

    def resolve(self, raw: str, note: str = "") -> Target:
        """Validate and resolve ``raw``.

        Raises:
            InvalidTarget: if the input is not an address or a resolvable domain
        """
        text = raw.strip()
        if text.startswith("[") and text.endswith("]"):
            text = text[1:-1]

        try:
            literal = ipaddress.ip_address(text)
        except ValueError:
            literal = None

        if literal is not None:
            address = str(literal)
            reverse_name = self._reverse_name(address)
            return Target(
                raw=raw,
                address=address,
                family=literal.version,
                label=self._label(text, address, reverse_name),
                note=note,
                reverse_name=reverse_name,
            )

        if _DOTTED_QUAD.match(text):
            raise InvalidTarget(f"Invalid IP address: {raw}")
        if ":" in text:
            raise InvalidTarget(f"Invalid IPv6 address: {raw}")

        domain = text[:-1] if text.endswith(".") else text
        if not _DOMAIN.match(domain):
            raise InvalidTarget(f"Invalid IP or domain: {raw}")

        address = self._lookup(domain.lower(), raw)
        reverse_name = self._reverse_name(address)
        return Target(
            raw=raw,
            address=address,
            family=ipaddress.ip_address(address).version,
            label=self._label(domain, address, reverse_name),
            note=note,
            reverse_name=reverse_name,
        )

    def _lookup(self, domain: str, raw: str) -> str:
        key = (domain, self.family)
        if key in self._cache:
            return self._cache[key]
        try:
            infos = self._resolver(domain, None, _AF[self.family], socket.SOCK_STREAM)
        except (socket.gaierror, OSError, UnicodeError) as exc:
            logger.debug("DNS lookup failed: domain=%s, error=%s", domain, exc)
            raise InvalidTarget(f"Unable to resolve domain to IP: {raw}") from exc

        # auto prefers an A record and only falls back to AAAA.
        for wanted in (socket.AF_INET, socket.AF_INET6):
            for family, _, _, _, sockaddr in infos:
                if family == wanted:
                    address = sockaddr[0].split("%", 1)[0]
                    self._cache[key] = address
                    logger.debug("Resolved %s -> %s", domain, address)
                    return address
        raise InvalidTarget(f"Unable to resolve domain to IP: {raw}")

    def _reverse_name(self, address: str) -> str | None:
        if self._reverse is None:
            return None
        try:
            name = self._reverse(address)[0]
        except (socket.herror, socket.gaierror, OSError):
            return None
        name = name.rstrip(".")
        return name if name and name != address else None

    @staticmethod
    def _label(display: str, address: str, reverse_name: str | None) -> str:
        label = display if display == address else f"{display} ({address})"
        if reverse_name and reverse_name.lower() != display.lower().rstrip("."):
            label += f" ({reverse_name})"
        return label
