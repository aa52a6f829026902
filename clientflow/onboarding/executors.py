"""Provisioning step executors — Linear project, Figma file, GitHub repo.

Every executor exposes ``create(company_name, contact) -> ProvisionResult``
and never raises: HTTP, transport and configuration failures come back as
``success=False`` with a message. The orchestrator depends only on that
shape.

Security: tokens come from settings, are sent only in auth headers, and
are never logged.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import re
from collections.abc import Awaitable, Callable
from datetime import date
from typing import Any, Protocol, runtime_checkable
from urllib.parse import quote

import httpx

from clientflow.errors import ProvisionError
from clientflow.onboarding.models import ContactInfo, ProvisionResult

logger = logging.getLogger(__name__)

LINEAR_API_URL = "https://api.linear.app"
FIGMA_API_URL = "https://api.figma.com"
GITHUB_API_URL = "https://api.github.com"

_PLACEHOLDER = "_Will be added during onboarding_"


@runtime_checkable
class StepExecutor(Protocol):
    async def create(self, company_name: str, contact: ContactInfo) -> ProvisionResult: ...


class _HttpExecutor:
    """Shared httpx plumbing and error mapping."""

    service = "provider"

    def __init__(
        self,
        base_url: str,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._base_url = base_url
        self._timeout = timeout
        self._transport = transport

    def _client(self, headers: dict[str, str]) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=headers,
            timeout=self._timeout,
            transport=self._transport,
        )

    def _missing_config(self) -> str | None:
        return None

    async def _provision(self, company_name: str, contact: ContactInfo) -> ProvisionResult:
        raise NotImplementedError

    async def create(self, company_name: str, contact: ContactInfo) -> ProvisionResult:
        missing = self._missing_config()
        if missing:
            logger.warning("%s step skipped: %s is not configured", self.service, missing)
            return ProvisionResult.failed(f"{missing} is not configured")
        try:
            return await self._provision(company_name, contact)
        except httpx.HTTPStatusError as e:
            error = _http_error_message(self.service, e.response)
        except httpx.TransportError as e:
            error = f"{self.service} API unreachable: {type(e).__name__}"
        except ProvisionError as e:
            error = str(e)
        logger.error("Failed to provision %s for %s: %s", self.service, company_name, error)
        return ProvisionResult.failed(error)


def _http_error_message(service: str, response: httpx.Response) -> str:
    if response.status_code == 429:
        return "API rate limited"
    return f"{service} API error: {response.status_code} {response.reason_phrase}"


# ---------------------------------------------------------------------------
# Linear
# ---------------------------------------------------------------------------

_PROJECT_CREATE = """
mutation CreateProject($input: ProjectCreateInput!) {
  projectCreate(input: $input) {
    success
    project { id name url }
  }
}
"""


def linear_project_description(company_name: str, contact: ContactInfo) -> str:
    """Markdown body for the client's project."""
    figma = contact.links.get("figma_file") or _PLACEHOLDER
    repo = contact.links.get("github_repo") or _PLACEHOLDER
    portal = contact.billing_portal_url
    subscription = f"[Manage Subscription]({portal})" if portal else _PLACEHOLDER
    return f"""# {company_name} - Client Project

Welcome aboard, {contact.first_name}! This is the hub for all design and development requests.

## How It Works

1. **Backlog** - Submit unlimited requests here.
2. **Current Request** - One active request at a time.
3. **Approved** - Completed work you have reviewed and approved.

## Project Details

**Company:** {company_name}
**Contact:** {contact.full_name} ({contact.email})
**Subscription:** {subscription}

## Quick Links

**Figma Design File:** {figma}
**GitHub Repository:** {repo}

**Project Created:** {date.today().isoformat()}
"""


class LinearProjectCreator(_HttpExecutor):
    service = "Linear"

    def __init__(
        self,
        api_key: str,
        team_id: str,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(LINEAR_API_URL, timeout, transport)
        self._api_key = api_key
        self._team_id = team_id

    def _missing_config(self) -> str | None:
        if not self._api_key:
            return "LINEAR_API_KEY"
        if not self._team_id:
            return "LINEAR_TEAM_ID"
        return None

    async def _provision(self, company_name: str, contact: ContactInfo) -> ProvisionResult:
        variables = {
            "input": {
                "name": f"{company_name} - Client Project",
                "description": linear_project_description(company_name, contact),
                "teamIds": [self._team_id],
                "state": "started",
            }
        }
        async with self._client({"Authorization": self._api_key}) as client:
            resp = await client.post("/graphql", json={"query": _PROJECT_CREATE, "variables": variables})
            resp.raise_for_status()
            body = resp.json()

        if body.get("errors"):
            raise ProvisionError(f"Linear API error: {body['errors'][0].get('message')}")
        payload = (body.get("data") or {}).get("projectCreate") or {}
        if not payload.get("success"):
            raise ProvisionError("Failed to create Linear project")
        project = payload["project"]
        logger.info("Created Linear project %s (%s)", project.get("name"), project["id"])
        return ProvisionResult(identifier=project["id"], url=project["url"], success=True)


# ---------------------------------------------------------------------------
# Figma
# ---------------------------------------------------------------------------


class FigmaFileDuplicator(_HttpExecutor):
    service = "Figma"

    def __init__(
        self,
        access_token: str,
        template_file_key: str,
        team_id: str = "",
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(FIGMA_API_URL, timeout, transport)
        self._token = access_token
        self._template = template_file_key
        self._team_id = team_id

    def _missing_config(self) -> str | None:
        if not self._token:
            return "FIGMA_ACCESS_TOKEN"
        if not self._template:
            return "FIGMA_TEMPLATE_FILE_KEY"
        return None

    async def _provision(self, company_name: str, contact: ContactInfo) -> ProvisionResult:
        name = f"{company_name} - Design Board"
        body: dict[str, Any] = {"name": name}
        if self._team_id:
            body["team_id"] = self._team_id
        async with self._client({"X-Figma-Token": self._token}) as client:
            resp = await client.post(f"/v1/files/{self._template}/copy", json=body)
            resp.raise_for_status()
            data = resp.json()

        key = data.get("key")
        if not key:
            raise ProvisionError("Figma API returned no file key")
        url = f"https://www.figma.com/file/{key}/{quote(data.get('name') or name)}"
        logger.info("Duplicated Figma template for %s: %s", company_name, key)
        return ProvisionResult(identifier=key, url=url, success=True)


# ---------------------------------------------------------------------------
# GitHub
# ---------------------------------------------------------------------------


def repo_slug(company_name: str) -> str:
    """Lowercase hyphenated slug: 'Acme Corp!' -> 'acme-corp'."""
    slug = re.sub(r"[^a-z0-9\s-]", "", company_name.lower())
    slug = re.sub(r"\s+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-") or "client"


def repo_readme(company_name: str, contact: ContactInfo) -> str:
    figma = contact.links.get("figma_file")
    lines = [
        f"# {company_name} - Design Files",
        "",
        f"This repository contains all design files, assets, and deliverables for {company_name}.",
        "",
        "## Structure",
        "",
        "- `/designs` - Source design files (Figma exports, Sketch, etc.)",
        "- `/assets` - Logos, images, fonts, and other brand assets",
        "- `/deliverables` - Final delivered files ready for use",
        "",
        "## Quick Links",
        "",
        f"**Design Files:** {figma or _PLACEHOLDER}",
    ]
    if contact.billing_portal_url:
        lines.append(f"**Manage Subscription:** {contact.billing_portal_url}")
    lines.append("")
    return "\n".join(lines)


SEED_FILES: dict[str, str] = {
    "designs/README.md": "# Designs\n\nSource design files exported from Figma, Sketch, or other tools.\n",
    "assets/README.md": "# Assets\n\nBrand assets: `/logos`, `/images`, `/fonts`.\n",
    "assets/logos/README.md": "# Logos\n\nPlace company logos here in various formats (SVG, PNG, etc.).\n",
    "assets/images/README.md": "# Images\n\nPlace marketing images, photos, and graphics here.\n",
    "assets/fonts/README.md": "# Fonts\n\nPlace custom typography files here (.ttf, .otf, .woff, .woff2).\n",
    "deliverables/README.md": "# Deliverables\n\nFinal, approved deliverables organised as `YYYY-MM-DD-project-name/`.\n",
    ".gitignore": ".DS_Store\nThumbs.db\n*.tmp\n*.swp\n.env\nnode_modules/\n",
}


class GitHubRepoCreator(_HttpExecutor):
    service = "GitHub"

    def __init__(
        self,
        token: str,
        org: str,
        timeout: float = 20.0,
        settle_delay: float = 2.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        super().__init__(GITHUB_API_URL, timeout, transport)
        self._token = token
        self._org = org
        self._settle_delay = settle_delay
        self._sleep = sleep

    def _missing_config(self) -> str | None:
        if not self._token:
            return "GITHUB_TOKEN"
        if not self._org:
            return "GITHUB_ORG"
        return None

    async def _put_file(
        self, client: httpx.AsyncClient, full_name: str, path: str, content: str, message: str
    ) -> None:
        body: dict[str, Any] = {
            "message": message,
            "content": base64.b64encode(content.encode("utf-8")).decode("ascii"),
        }
        existing = await client.get(f"/repos/{full_name}/contents/{path}")
        if existing.status_code == 200:
            body["sha"] = existing.json().get("sha")
        resp = await client.put(f"/repos/{full_name}/contents/{path}", json=body)
        resp.raise_for_status()

    async def _provision(self, company_name: str, contact: ContactInfo) -> ProvisionResult:
        name = f"{repo_slug(company_name)}-design-files"
        headers = {
            "Authorization": f"token {self._token}",
            "Accept": "application/vnd.github.v3+json",
        }
        async with self._client(headers) as client:
            resp = await client.post(
                f"/orgs/{self._org}/repos",
                json={
                    "name": name,
                    "description": f"Design files and assets for {company_name}",
                    "private": True,
                    "auto_init": True,
                    "has_issues": False,
                    "has_projects": False,
                    "has_wiki": False,
                },
            )
            resp.raise_for_status()
            repo = resp.json()
            full_name = repo["full_name"]

            # Freshly created repos reject content writes for a moment
            if self._settle_delay:
                await self._sleep(self._settle_delay)

            await self._put_file(
                client,
                full_name,
                "README.md",
                repo_readme(company_name, contact),
                "docs: update README with client information",
            )
            for path, content in SEED_FILES.items():
                await self._put_file(client, full_name, path, content, f"docs: add {path}")

        logger.info("Created GitHub repo %s", full_name)
        return ProvisionResult(identifier=full_name, url=repo["html_url"], success=True)
