"""SiteRegistry: which remote sites exist, who owns them, how to reach them."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel

from clients.base import RemoteActionClient
from clients.wordpress import WordPressClient
from core.errors import MissingCredentialsError

logger = logging.getLogger(__name__)


class Site(BaseModel):
    id: str
    owner: str
    url: str
    username: str | None = None
    app_password_env: str | None = None   # name of the env var holding the password


class SiteRegistry:
    def __init__(self) -> None:
        self._sites: dict[str, Site] = {}
        self._clients: dict[str, RemoteActionClient] = {}

    @classmethod
    def from_file(cls, path: Path | str) -> SiteRegistry:
        """Load ``sites: {<id>: {owner, url, username, app_password_env}}`` from YAML."""
        registry = cls()
        data = yaml.safe_load(Path(path).read_text()) or {}
        for site_id, cfg in (data.get("sites") or {}).items():
            registry.register(Site(id=site_id, **cfg))
        logger.info("Loaded sites", extra={"path": str(path), "count": len(registry._sites)})
        return registry

    def register(self, site: Site, client: RemoteActionClient | None = None) -> None:
        """Add a site; *client* overrides the WordPress client built from credentials."""
        self._sites[site.id] = site
        if client is not None:
            self._clients[site.id] = client
        else:
            self._clients.pop(site.id, None)

    def get(self, site_id: str) -> Site:
        try:
            return self._sites[site_id]
        except KeyError:
            raise KeyError(f"Site '{site_id}' not found") from None

    def ensure_owned(self, site_id: str, owner: str) -> Site:
        """Raises KeyError when the site is unknown or belongs to someone else."""
        site = self.get(site_id)
        if site.owner != owner:
            raise KeyError(f"Site '{site_id}' not found")
        return site

    def list_sites(self, owner: str | None = None) -> list[Site]:
        return [s for s in self._sites.values() if owner is None or s.owner == owner]

    def client_for(self, site_id: str) -> RemoteActionClient:
        """Client for *site_id*; raises MissingCredentialsError when none is usable."""
        if site_id in self._clients:
            return self._clients[site_id]
        try:
            site = self.get(site_id)
        except KeyError:
            raise MissingCredentialsError(site_id, "site is not configured") from None
        if not site.username or not site.app_password_env:
            raise MissingCredentialsError(site_id)
        password = os.environ.get(site.app_password_env)
        if not password:
            raise MissingCredentialsError(site_id, f"{site.app_password_env} is not set")
        return WordPressClient(site.url, site.username, password)
