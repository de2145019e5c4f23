"""Ingestion components for fetching Jira issues"""

from jirasync.ingestion.base import EntityFetcher, FetchPage, Pagination
from jirasync.ingestion.jira_client import JiraFetcher

__all__ = ["EntityFetcher", "FetchPage", "JiraFetcher", "Pagination"]
