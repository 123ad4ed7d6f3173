"""
Policy Fetcher: retrieves a project's role-approval policy.

A policy is a small XML document:

    <policy>
      <rule role="observer" action="approve"/>
      <rule role="developer,committer" action="talk">
        To: owner@${project}.dev.java.net
        Subject: ${user} wants to be a ${role}
        ...
      </rule>
      <rule role="content developer" action="deny">Sorry, ${user}.</rule>
    </policy>

A project can point somewhere else instead by serving
``<redirect>other/location.policy</redirect>``; the location may be
absolute or relative to the URL that produced the redirect.
"""

import logging
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from urllib.parse import urljoin

import httpx

from ..core.config import Settings, get_settings
from .errors import ParseError, PolicyFetchError
from .interfaces import PolicySource


logger = logging.getLogger(__name__)

REDIRECT_ELEMENT = "redirect"
RULE_ELEMENT = "rule"


# =============================================================================
# DATA TRANSFER OBJECTS
# =============================================================================


@dataclass(frozen=True)
class Rule:
    """One policy rule, in document order."""
    roles: frozenset[str]
    action: str
    body_template: str = ""

    @classmethod
    def from_attributes(cls, role: str, action: str, body: str = "") -> "Rule":
        roles = frozenset(r.strip() for r in role.split(",") if r.strip())
        return cls(roles=roles, action=action.strip().lower(), body_template=body)

    def matches(self, role_name: str) -> bool:
        return role_name in self.roles


@dataclass(frozen=True)
class PolicyDocument:
    """An ordered list of rules."""
    rules: tuple[Rule, ...] = field(default_factory=tuple)
    source_url: str | None = None


# =============================================================================
# PARSING
# =============================================================================


def parse_policy(content: bytes | str, source_url: str | None = None) -> PolicyDocument:
    """Parse a policy document. Raises ParseError on malformed XML."""
    root = _parse_root(content, source_url)
    return _policy_from_root(root, source_url)


def _parse_root(content: bytes | str, source_url: str | None) -> ET.Element:
    try:
        return ET.fromstring(content)
    except ET.ParseError as e:
        raise ParseError(f"Malformed policy document at {source_url}: {e}") from e


def _policy_from_root(root: ET.Element, source_url: str | None) -> PolicyDocument:
    rules = tuple(
        Rule.from_attributes(
            role=element.get("role", ""),
            action=element.get("action", ""),
            body=element.text or "",
        )
        for element in root.findall(RULE_ELEMENT)
    )
    return PolicyDocument(rules=rules, source_url=source_url)


# =============================================================================
# FETCHER
# =============================================================================


class PolicyFetcher(PolicySource):
    """
    Fetches policy documents over HTTP.

    No retries: a transport or parse failure aborts the conversation that
    asked for the policy.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
    ):
        self._settings = settings or get_settings()
        self._client = client
        self._max_redirects = self._settings.policy_max_redirects

    def policy_url(self, project_name: str) -> str:
        """Canonical policy URL for a project."""
        return self._settings.policy_url_template.format(project=project_name)

    async def fetch(self, project_name: str) -> PolicyDocument:
        """Fetch and parse the policy for a project, following redirects."""
        url = self.policy_url(project_name)

        if self._client is not None:
            return await self._fetch_following(self._client, url)

        async with httpx.AsyncClient(
            timeout=self._settings.policy_timeout_seconds,
            follow_redirects=True,
        ) as client:
            return await self._fetch_following(client, url)

    async def _fetch_following(self, client: httpx.AsyncClient, url: str) -> PolicyDocument:
        hops = 0
        while True:
            logger.info(f"Fetching the policy file: {url}")
            content, url = await self._get(client, url)
            root = _parse_root(content, url)

            if root.tag != REDIRECT_ELEMENT:
                return _policy_from_root(root, url)

            location = (root.text or "").strip()
            if not location:
                raise ParseError(f"Empty redirect in policy document at {url}")

            hops += 1
            if hops > self._max_redirects:
                raise PolicyFetchError(
                    f"Too many policy redirects (more than {self._max_redirects}), last at {url}"
                )

            logger.info(f"Redirected to {location}")
            url = urljoin(url, location)

    async def _get(self, client: httpx.AsyncClient, url: str) -> tuple[bytes, str]:
        """GET a URL, returning the body and the final URL after HTTP redirects."""
        try:
            response = await client.get(url)
            response.raise_for_status()
        except httpx.InvalidURL as e:
            raise PolicyFetchError(f"Malformed policy URL {url!r}: {e}") from e
        except httpx.HTTPError as e:
            raise PolicyFetchError(f"Failed to fetch policy from {url}: {e}") from e
        return response.content, str(response.url)
