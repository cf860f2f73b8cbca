"""
Baggage handling and environment divert routing.

Baggage uses the W3C layout ``key1=value1;prop,key2=value2``. Only the
``okteto-divert`` member is interpreted; everything else is forwarded as is.
"""

from typing import Dict, Iterable, Optional, Tuple, Union
from urllib.parse import unquote

DIVERT_KEY = "okteto-divert"

HeaderValue = Union[str, bytes, None]


def parse_baggage(baggage: Optional[str]) -> Dict[str, str]:
    """
    Parse a baggage string into a key/value dict.

    Members without ``=`` are ignored and member properties (after ``;``) are
    dropped. The first occurrence of a key wins.

    Args:
        baggage: Raw baggage header value

    Returns:
        Dict of member keys to percent-decoded values
    """
    members: Dict[str, str] = {}
    if not baggage:
        return members

    for member in baggage.split(","):
        key, sep, value = member.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        value = value.split(";", 1)[0].strip()
        members.setdefault(key, unquote(value))
    return members


def extract_divert(baggage: Optional[str]) -> str:
    """Return the okteto-divert value carried in baggage, or an empty string."""
    return parse_baggage(baggage).get(DIVERT_KEY, "")


def extract_baggage(headers: Optional[Iterable[Tuple[str, HeaderValue]]]) -> str:
    """
    Pull the baggage string out of Kafka message headers.

    Args:
        headers: Header list as returned by ``Message.headers()``

    Returns:
        Baggage string, empty when the header is absent
    """
    if not headers:
        return ""
    for key, value in headers:
        if key.lower() != "baggage" or value is None:
            continue
        if isinstance(value, bytes):
            return value.decode("utf-8", errors="replace")
        return value
    return ""


def should_process(divert: str, environment: str) -> bool:
    """
    Decide whether this consumer instance owns a message.

    A diverted message belongs only to the instance whose environment tag
    matches the divert value. An untagged message belongs only to the
    baseline instance, the one with an empty environment tag.

    Args:
        divert: okteto-divert value carried by the message ("" when absent)
        environment: This instance's environment tag

    Returns:
        True if the message should be handled here
    """
    if divert:
        return divert == environment
    return environment == ""
