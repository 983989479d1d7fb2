"""
Resolver - Look up the current handle and display name of an account.
"""

import asyncio
import logging

import aiohttp

from .config import get_config, IndexerConfig
from .errors import NotFoundError, ResolutionError
from .fetcher import Fetcher
from .identity import shorten_did, shorten_handle, unwrap_short_did
from .models import AccountProfile


logger = logging.getLogger(__name__)


PROFILE_ENDPOINT = "/xrpc/app.bsky.actor.getProfile"


class IdentityResolver:
    """
    Resolves short DIDs (or handles) through the AppView getProfile endpoint.

    An identifier containing a dot is treated as a handle; anything else is
    a (short) DID.
    """

    def __init__(self, fetcher: Fetcher, config: IndexerConfig | None = None):
        self.config = config or get_config()
        self.fetcher = fetcher

    @staticmethod
    def actor_for(identifier: str) -> str:
        identifier = identifier.strip()
        if identifier.startswith("did:"):
            return identifier
        if "." in identifier:
            return identifier.lstrip("@")
        return unwrap_short_did(identifier)

    async def resolve(self, identifier: str) -> AccountProfile:
        """
        Raises:
            NotFoundError: the account does not exist
            ResolutionError: any other failure
        """
        if not identifier:
            raise NotFoundError(identifier, "empty identifier")

        url = self.config.appview_url + PROFILE_ENDPOINT
        session = self.fetcher()

        try:
            async with session.get(url, params={"actor": self.actor_for(identifier)}) as response:
                if response.status in (400, 404):
                    raise NotFoundError(identifier, f"HTTP {response.status}")
                if response.status >= 400:
                    raise ResolutionError(identifier, f"HTTP {response.status}")
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            raise ResolutionError(identifier, str(e) or type(e).__name__) from e

        return profile_from_json(identifier, data)


def profile_from_json(identifier: str, data) -> AccountProfile:
    """Build an AccountProfile from an actor.getProfile response."""
    if not isinstance(data, dict):
        raise ResolutionError(identifier, "malformed profile")

    short_did = shorten_did(data.get("did"))
    short_handle = shorten_handle(data.get("handle"))
    if not short_did or not short_handle:
        raise ResolutionError(identifier, "profile lacks did or handle")

    display_name = data.get("displayName")
    display_name = display_name.strip() if isinstance(display_name, str) else None

    return AccountProfile(
        short_did=short_did,
        short_handle=short_handle,
        display_name=display_name or None,
    )
