"""
Identity helpers - converting between full and short account identifiers.
"""

from typing import Optional, Tuple


_PLC_PREFIX = "did:plc:"
_DEFAULT_HANDLE_SUFFIX = ".bsky.social"
_AT_URI_PREFIX = "at://"


def shorten_did(did: Optional[str]) -> Optional[str]:
    """did:plc:abc -> abc; other DID methods are kept whole."""
    if not did:
        return None
    did = did.strip()
    if did.lower().startswith(_PLC_PREFIX):
        return did[len(_PLC_PREFIX):]
    return did or None


def unwrap_short_did(short_did: str) -> str:
    """Inverse of shorten_did."""
    if short_did.startswith("did:"):
        return short_did
    return _PLC_PREFIX + short_did


def shorten_handle(handle: Optional[str]) -> Optional[str]:
    """alice.bsky.social -> alice; custom domains are kept whole."""
    if not handle:
        return None
    handle = handle.strip().lower()
    if handle.startswith("@"):
        handle = handle[1:]
    if handle.endswith(_DEFAULT_HANDLE_SUFFIX):
        return handle[:-len(_DEFAULT_HANDLE_SUFFIX)]
    return handle or None


def break_at_uri(uri: Optional[str]) -> Optional[Tuple[str, str, str]]:
    """
    Split an at:// record URI into (short_did, collection, rkey).

    Returns None for anything that is not a record URI with a DID authority.
    """
    if not uri or not isinstance(uri, str) or not uri.startswith(_AT_URI_PREFIX):
        return None
    parts = uri[len(_AT_URI_PREFIX):].split("/")
    if not parts or not parts[0].startswith("did:"):
        return None
    short_did = shorten_did(parts[0])
    if not short_did:
        return None
    collection = parts[1] if len(parts) > 1 else ""
    rkey = parts[2] if len(parts) > 2 else ""
    return short_did, collection, rkey
