"""Reverse-lookup name to address conversion.

Brief:
  PTR queries arrive as ``<reversed labels>.in-addr.arpa`` or
  ``<reversed nibbles>.ip6.arpa``. The helpers here turn those names back into
  canonical address strings that can be probed against the record store.

Inputs:
  - Normalized query names (lowercase, no trailing dot).

Outputs:
  - Address strings, or MalformedAddress for names that do not encode one.
"""

import ipaddress
import string
from typing import List

from .errors import MalformedAddress

IPV4_REVERSE_ZONE = "in-addr.arpa"
IPV6_REVERSE_ZONE = "ip6.arpa"

_HEX_DIGITS = frozenset(string.hexdigits)
_IPV4_MAPPED = ipaddress.ip_network("::ffff:0:0/96")


def _strip_zone(name: str, zone: str) -> str:
    """Brief: Remove a reverse zone suffix and return the address labels.

    Inputs:
      - name: Full reverse-lookup name.
      - zone: Reverse zone ('in-addr.arpa' or 'ip6.arpa').

    Outputs:
      - str: Label portion before the zone.

    Raises:
      - MalformedAddress: when the name is not inside *zone*.
    """

    name = name.rstrip(".").lower()
    tail = "." + zone
    if not name.endswith(tail) or len(name) == len(tail):
        raise MalformedAddress(f"{name!r} is not a name under {zone}")
    return name[: -len(tail)]


def ipv4_from_ptr(name: str) -> str:
    """
    Brief: Convert an in-addr.arpa name into a dotted-quad IPv4 address.

    Inputs:
      - name: e.g. '4.3.2.1.in-addr.arpa'

    Outputs:
      - str: e.g. '1.2.3.4'

    Raises:
      - MalformedAddress: wrong label count, non-decimal or out-of-range octets.

    Example:
      >>> ipv4_from_ptr("4.3.2.1.in-addr.arpa")
      '1.2.3.4'
    """

    labels = _strip_zone(name, IPV4_REVERSE_ZONE).split(".")
    if len(labels) != 4:
        raise MalformedAddress(
            f"{name!r} has {len(labels)} address labels, expected 4"
        )
    candidate = ".".join(reversed(labels))
    try:
        return str(ipaddress.IPv4Address(candidate))
    except ValueError as e:
        raise MalformedAddress(f"{name!r} does not encode an IPv4 address: {e}")


def ipv6_candidates_from_ptr(name: str) -> List[str]:
    """
    Brief: Convert an ip6.arpa name into the addresses to probe in the store.

    Inputs:
      - name: 32 single hex-digit labels followed by 'ip6.arpa'.

    Outputs:
      - list[str]: The canonical IPv6 address. An IPv4-mapped address
        (::ffff:0:0/96) yields ::ffff:<hex>:<hex>, ::ffff:a.b.c.d and the
        dotted quad, in that order.

    Raises:
      - MalformedAddress: wrong label count, multi-character or non-hex labels.

    Example:
      >>> ipv6_candidates_from_ptr(
      ...     "1.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.0.ip6.arpa"
      ... )
      ['::1']
    """

    labels = _strip_zone(name, IPV6_REVERSE_ZONE).split(".")
    if len(labels) != 32:
        raise MalformedAddress(
            f"{name!r} has {len(labels)} nibble labels, expected 32"
        )
    for label in labels:
        if len(label) != 1 or label not in _HEX_DIGITS:
            raise MalformedAddress(f"{name!r} contains invalid nibble {label!r}")

    addr = ipaddress.IPv6Address(int("".join(reversed(labels)), 16))
    if addr not in _IPV4_MAPPED:
        return [str(addr)]
    # Mapped hosts are stored as ::ffff:<hex>:<hex>, ::ffff:a.b.c.d or a bare
    # dotted quad; str() of a mapped address differs between interpreters.
    v4 = addr.ipv4_mapped
    low32 = int(v4)
    return [
        f"::ffff:{low32 >> 16:x}:{low32 & 0xFFFF:x}",
        f"::ffff:{v4}",
        str(v4),
    ]


def ptr_name_for(address: str) -> str:
    """Brief: Build the reverse-lookup name for an address.

    Inputs:
      - address: IPv4 or IPv6 address string.

    Outputs:
      - str: reverse name without trailing dot.
    """

    return ipaddress.ip_address(address).reverse_pointer
