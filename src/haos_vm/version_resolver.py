"""Resolve Home Assistant OS versions per release channel."""

import json
import logging
from typing import Any, Optional

import requests

from haos_vm.models import VERSION_PATTERN, Channel, ReleaseVersions, ResolutionError

logger = logging.getLogger(__name__)


class VersionResolver:
    """Reads the OVA version tag from channel metadata, with a mirror fallback."""

    def __init__(
        self,
        primary_template: str,
        fallback_template: str,
        timeout: int = 15,
        session: Optional[requests.Session] = None,
    ) -> None:
        """
        Args:
            primary_template: Metadata URL with a {channel} placeholder
            fallback_template: Mirror URL with a {channel} placeholder
            timeout: Per-request timeout in seconds
            session: Optional requests session (shared connection pool)
        """
        self.primary_template = primary_template
        self.fallback_template = fallback_template
        self.timeout = timeout
        self.session = session or requests.Session()

    def _fetch(self, url: str) -> Optional[str]:
        try:
            response = self.session.get(url, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning(f"Metadata fetch failed for {url}: {e}")
            return None
        body = response.text
        if not body or not body.strip():
            logger.warning(f"Empty metadata document from {url}")
            return None
        return body

    def resolve(self, channel: Channel) -> str:
        """
        Return the validated OVA version for a channel.

        Raises:
            ResolutionError: If neither source answers or the version is malformed
        """
        primary = self.primary_template.format(channel=channel.value)
        fallback = self.fallback_template.format(channel=channel.value)

        body = self._fetch(primary)
        if body is None:
            logger.info(f"Falling back to mirror for {channel.value} metadata")
            body = self._fetch(fallback)
        if body is None:
            raise ResolutionError(f"Unable to retrieve {channel.value} metadata from {primary} or {fallback}")

        try:
            document: Any = json.loads(body)
        except ValueError as e:
            raise ResolutionError(f"Malformed {channel.value} metadata: {e}")

        version = document.get("ova") if isinstance(document, dict) else None
        if not isinstance(version, str) or not VERSION_PATTERN.match(version):
            raise ResolutionError(f"Invalid OVA version in {channel.value} metadata: {version!r}")

        logger.debug(f"Resolved {channel.value} → {version}")
        return version

    def resolve_all(self) -> ReleaseVersions:
        """
        Resolve every channel. Stable is mandatory; beta and dev only disable
        their channel when they fail.
        """
        stable = self.resolve(Channel.STABLE)
        optional = {}
        for channel in (Channel.BETA, Channel.DEV):
            try:
                optional[channel.value] = self.resolve(channel)
            except ResolutionError as e:
                logger.warning(f"⚠️  {channel.value} channel unavailable: {e}")
                optional[channel.value] = None

        versions = ReleaseVersions(stable=stable, **optional)
        logger.info(f"Retrieved HAOS versions (stable: {versions.stable}, beta: {versions.beta}, dev: {versions.dev})")
        return versions
