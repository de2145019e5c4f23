"""Property-based tests for JiraFetcher and the provider module.

**Feature: jira-incremental-sync, Property 14: Complete page retrieval**
"""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from unittest.mock import Mock

import pytest
import structlog
from hypothesis import given, settings
from hypothesis import strategies as st
from requests import Response
from requests.exceptions import ConnectionError, HTTPError, ReadTimeout

from jirasync.errors import RemoteRejection, TransportError
from jirasync.ingestion.base import EntityFetcher, Pagination
from jirasync.ingestion.jira_client import JiraFetcher
from jirasync.models.config import JiraConfig, StorageConfig
from jirasync.providers import get_fetcher, get_store
from jirasync.storage.json_store import JsonStore
from jirasync.storage.sqlite_store import SqliteStore

log = structlog.stdlib.get_logger()


@st.composite
def jira_issue_strategy(draw, index: int = 0):
    """Generate a raw issue as returned by the search endpoint."""
    updated = draw(st.datetimes(min_value=datetime(2020, 1, 1), max_value=datetime(2030, 1, 1)))
    return {
        "id": str(10000 + index),
        "key": f"PROJ-{index}",
        "fields": {
            "summary": draw(st.text(max_size=50)),
            "updated": updated.replace(tzinfo=timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.000+0000"),
            "status": {"name": draw(st.sampled_from(["Open", "In Progress", "Done"]))},
        },
        "changelog": {"startAt": 0, "maxResults": 0, "total": 0, "histories": []},
    }


def make_fetcher(response=None, side_effect=None) -> tuple[JiraFetcher, Mock]:
    client = Mock()
    client.jql.return_value = response
    client.jql.side_effect = side_effect
    return JiraFetcher(base_url="https://test.atlassian.net", auth_token="t", client=client), client


def http_error(status_code: int) -> HTTPError:
    response = Response()
    response.status_code = status_code
    return HTTPError(f"{status_code} error", response=response)


@given(st.data(), st.integers(min_value=0, max_value=30), st.integers(min_value=0, max_value=60))
@settings(max_examples=50, deadline=None)
def test_property_14_complete_page_retrieval(data, page_len: int, extra: int):
    """Property 14: Complete page retrieval.

    For any page the search returns, every well-formed issue becomes an
    entity, and ``is_last`` is set exactly when the page reaches the total.

    **Feature: jira-incremental-sync, Property 14: Complete page retrieval**
    """
    issues = [data.draw(jira_issue_strategy(index=i)) for i in range(page_len)]
    total = page_len + extra
    log.info("test_property_14_complete_page_retrieval", page_len=page_len, total=total)
    fetcher, client = make_fetcher({"startAt": 0, "maxResults": 100, "total": total, "issues": issues})

    page = asyncio.run(fetcher.fetch("updated >= '2024-01-01 00:00'", Pagination(max_results=100)))

    assert [e.key for e in page.entities] == [issue["key"] for issue in issues]
    assert page.total == total
    assert page.received == page_len
    assert page.is_last == (page_len == 0 or extra == 0)
    client.jql.assert_called_once_with(
        "updated >= '2024-01-01 00:00'", start=0, limit=100, expand="changelog"
    )


def test_issue_is_converted_with_changelog():
    issue = {
        "id": "10001",
        "key": "PROJ-1",
        "fields": {"summary": "Fix login", "updated": "2024-01-15T10:30:00.000+0100"},
        "changelog": {"histories": [{"id": "1", "created": "2024-01-15T10:00:00.000+0100", "items": []}]},
    }
    fetcher, _ = make_fetcher({"startAt": 50, "total": 51, "issues": [issue]})

    page = asyncio.run(fetcher.fetch("jql", Pagination(start_at=50, max_results=50)))

    (entity,) = page.entities
    assert entity.entity_id == "10001"
    assert entity.updated_at == datetime(2024, 1, 15, 9, 30, tzinfo=timezone.utc)
    assert entity.field_value("summary") == "Fix login"
    assert entity.changelog["histories"][0]["id"] == "1"
    assert page.start_at == 50
    assert page.is_last


def test_unconvertible_issues_are_dropped_but_counted():
    issues = [
        {"id": "1", "key": "PROJ-1", "fields": {"updated": "2024-01-15T10:30:00.000+0000"}},
        {"id": "2", "key": "PROJ-2", "fields": {}},
        {"id": "3", "fields": {"updated": "2024-01-15T10:30:00.000+0000"}},
    ]
    fetcher, _ = make_fetcher({"startAt": 0, "total": 10, "issues": issues})

    page = asyncio.run(fetcher.fetch("jql", Pagination(max_results=3)))

    assert [e.key for e in page.entities] == ["PROJ-1"]
    assert page.received == 3
    assert page.advance_by == 3
    assert not page.is_last


@pytest.mark.parametrize(
    ("status_code", "retryable"),
    [(429, True), (503, True), (400, False), (401, False)],
)
def test_http_errors_become_remote_rejections(status_code: int, retryable: bool):
    fetcher, _ = make_fetcher(side_effect=http_error(status_code))

    with pytest.raises(RemoteRejection) as exc_info:
        asyncio.run(fetcher.fetch("jql", Pagination()))

    assert exc_info.value.status_code == status_code
    assert exc_info.value.retryable is retryable


@pytest.mark.parametrize("error", [ConnectionError("reset"), ReadTimeout("slow")])
def test_network_errors_become_transport_errors(error: Exception):
    fetcher, _ = make_fetcher(side_effect=error)

    with pytest.raises(TransportError):
        asyncio.run(fetcher.fetch("jql", Pagination()))


def test_unexpected_response_is_rejected():
    fetcher, _ = make_fetcher("<html>maintenance</html>")

    with pytest.raises(RemoteRejection):
        asyncio.run(fetcher.fetch("jql", Pagination()))


def test_get_fetcher_builds_jira_fetcher():
    config = JiraConfig(
        base_url="https://test.atlassian.net", username="bot@example.com", auth_token="token"
    )

    fetcher = get_fetcher(config)

    assert isinstance(fetcher, JiraFetcher)
    assert isinstance(fetcher, EntityFetcher)


def test_get_store_builds_configured_backend(tmp_path: Path):
    json_store = get_store(StorageConfig(type="json", config={"data_dir": str(tmp_path)}))
    sqlite_store = get_store(StorageConfig(type="SQLite"))

    assert isinstance(json_store, JsonStore)
    assert isinstance(sqlite_store, SqliteStore)
    assert sqlite_store.count_entities() == 0

    with pytest.raises(ValueError, match="duckdb"):
        get_store(StorageConfig(type="duckdb"))
