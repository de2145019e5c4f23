"""Jira fetcher built on the atlassian-python-api client."""

import asyncio
from typing import Any

import structlog
from atlassian import Jira
from pydantic import ValidationError
from requests.exceptions import ConnectionError, HTTPError, RequestException, Timeout

from jirasync.errors import RemoteRejection, TransportError
from jirasync.ingestion.base import FetchPage, Pagination
from jirasync.models.config import JiraConfig
from jirasync.models.entity import EntityRecord

log = structlog.stdlib.get_logger()


class JiraFetcher:
    """Wrapper around atlassian-python-api Jira client implementing EntityFetcher."""

    def __init__(
        self,
        base_url: str,
        auth_token: str,
        username: str | None = None,
        cloud: bool = True,
        timeout: float = 30.0,
        client: Any = None,
    ):
        """
        Initialize Jira fetcher.

        Args:
            base_url: Jira instance URL
            auth_token: API token (with username) or personal access token
            username: Account e-mail for Cloud basic auth; None uses token auth
            cloud: True for Jira Cloud, False for Server/Data Center
            timeout: HTTP timeout in seconds
            client: Pre-built client, mainly for tests
        """
        if client is not None:
            self._client = client
        elif username:
            self._client = Jira(
                url=base_url, username=username, password=auth_token, cloud=cloud, timeout=timeout
            )
        else:
            self._client = Jira(url=base_url, token=auth_token, cloud=cloud, timeout=timeout)

        self._base_url = base_url
        log.info("jira_fetcher_initialized", base_url=base_url, cloud=cloud)

    @classmethod
    def from_config(cls, config: JiraConfig) -> "JiraFetcher":
        return cls(
            base_url=str(config.base_url),
            auth_token=config.auth_token,
            username=config.username,
            cloud=config.cloud,
            timeout=config.timeout,
        )

    async def fetch(self, predicate: str, pagination: Pagination) -> FetchPage:
        """
        Run one JQL search page with the changelog expanded.

        The blocking HTTP call runs in a worker thread so concurrent windows
        do not block the event loop.

        Args:
            predicate: JQL query
            pagination: Offset and page size

        Returns:
            FetchPage with converted entities

        Raises:
            TransportError: If Jira cannot be reached
            RemoteRejection: If Jira answers with an error status
        """
        log.debug(
            "fetching_issues",
            jql=predicate,
            start_at=pagination.start_at,
            max_results=pagination.max_results,
        )

        response = await asyncio.to_thread(self._search, predicate, pagination)

        issues = response.get("issues") or []
        total = int(response.get("total") or 0)
        start_at = int(response.get("startAt") or pagination.start_at)

        entities = []
        for issue in issues:
            entity = self._convert_to_entity(issue)
            if entity is not None:
                entities.append(entity)

        is_last = not issues or start_at + len(issues) >= total

        log.debug(
            "issues_fetched",
            start_at=start_at,
            received=len(issues),
            converted=len(entities),
            total=total,
            is_last=is_last,
        )

        return FetchPage(
            entities=entities,
            start_at=start_at,
            total=total,
            is_last=is_last,
            received=len(issues),
        )

    def _search(self, predicate: str, pagination: Pagination) -> dict[str, Any]:
        try:
            response = self._client.jql(
                predicate,
                start=pagination.start_at,
                limit=pagination.max_results,
                expand="changelog",
            )
        except HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None
            log.warning("jira_request_rejected", status_code=status_code, error=str(e))
            raise RemoteRejection(f"Jira rejected the search: {e}", status_code=status_code) from e
        except (ConnectionError, Timeout) as e:
            log.warning("jira_unreachable", error=str(e), error_type=type(e).__name__)
            raise TransportError(f"Jira unreachable: {e}") from e
        except RequestException as e:
            log.warning("jira_request_failed", error=str(e), error_type=type(e).__name__)
            raise TransportError(f"Jira request failed: {e}") from e

        if not isinstance(response, dict):
            raise RemoteRejection(f"Unexpected search response type {type(response).__name__}")
        return response

    def _convert_to_entity(self, issue: dict[str, Any]) -> EntityRecord | None:
        """
        Convert a raw Jira issue to an EntityRecord.

        Issues without a key or updated time are logged and dropped.
        """
        fields = issue.get("fields") or {}
        try:
            return EntityRecord(
                key=issue.get("key") or "",
                updated_at=fields.get("updated"),
                entity_id=str(issue["id"]) if issue.get("id") is not None else None,
                fields=fields,
                changelog=issue.get("changelog"),
            )
        except ValidationError as e:
            log.warning("failed_to_convert_issue", issue_key=issue.get("key"), error=str(e))
            return None
