"""Turns raw Jira changelogs into flat, ordered history records."""

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable

import structlog
from pydantic import ValidationError

from jirasync.errors import ParseError
from jirasync.models.entity import ChangeType, EntityRecord, HistoryAuthor, HistoryRecord
from jirasync.utils.time import parse_jira_datetime

log = structlog.stdlib.get_logger()


@dataclass
class NormalizationResult:
    """Records produced from one changelog plus what had to be dropped."""

    records: list[HistoryRecord] = field(default_factory=list)
    skipped: int = 0
    errors: list[ParseError] = field(default_factory=list)


class ChangelogNormalizer:
    """Flattens a changelog into one HistoryRecord per (event, item).

    This class is responsible for:
    1. Keeping the remote order and numbering records with a stable ``sequence``
    2. Skipping malformed events and items without failing the entity

    The output depends only on the input, so re-normalizing a changelog always
    yields the same records.
    """

    def normalize(
        self,
        entity_key: str,
        changelog: Any,
        entity_id: str | None = None,
    ) -> NormalizationResult:
        """Normalize one entity's changelog.

        Args:
            entity_key: Key of the entity the changelog belongs to
            changelog: Jira ``changelog`` object (``{"histories": [...]}``) or a
                bare list of change events
            entity_id: Remote numeric id copied onto every record

        Returns:
            NormalizationResult with records in remote order
        """
        result = NormalizationResult()

        if changelog is None:
            return result

        events = changelog.get("histories") if isinstance(changelog, dict) else changelog
        if not isinstance(events, list):
            self._record_error(
                result, entity_key, f"changelog of {entity_key} has no list of change events"
            )
            return result

        for event in events:
            self._normalize_event(result, entity_key, entity_id, event)

        if result.skipped:
            log.warning(
                "changelog_entries_skipped",
                entity_key=entity_key,
                skipped=result.skipped,
                record_count=len(result.records),
            )

        return result

    def normalize_entity(self, entity: EntityRecord) -> NormalizationResult:
        """Normalize the changelog carried by an entity, if any."""
        return self.normalize(entity.key, entity.changelog, entity_id=entity.entity_id)

    def _normalize_event(
        self,
        result: NormalizationResult,
        entity_key: str,
        entity_id: str | None,
        event: Any,
    ) -> None:
        if not isinstance(event, dict):
            self._record_error(result, entity_key, "change event is not an object")
            return

        change_id = event.get("id")
        created = event.get("created")
        items = event.get("items")

        if change_id is None or str(change_id) == "":
            self._record_error(result, entity_key, "change event without id")
            return
        if not isinstance(items, list):
            self._record_error(result, entity_key, f"change event {change_id} has no items")
            return
        if not isinstance(created, str):
            self._record_error(result, entity_key, f"change event {change_id} has no created time")
            return

        try:
            change_timestamp = parse_jira_datetime(created)
        except ValueError:
            self._record_error(
                result, entity_key, f"change event {change_id} has unparseable time {created!r}"
            )
            return

        author = _parse_author(event.get("author"))

        for item in items:
            if not isinstance(item, dict) or not item.get("field"):
                self._record_error(
                    result, entity_key, f"item of change event {change_id} has no field name"
                )
                continue

            try:
                record = HistoryRecord(
                    entity_key=entity_key,
                    entity_id=entity_id,
                    change_id=str(change_id),
                    field_name=str(item["field"]),
                    field_id=_optional_str(item.get("fieldId")),
                    change_timestamp=change_timestamp,
                    sequence=len(result.records),
                    from_value=_optional_str(item.get("from")),
                    to_value=_optional_str(item.get("to")),
                    from_display=_optional_str(item.get("fromString")),
                    to_display=_optional_str(item.get("toString")),
                    author=author,
                )
            except ValidationError as e:
                self._record_error(
                    result, entity_key, f"item of change event {change_id} is invalid: {e}"
                )
                continue

            result.records.append(record)

    def _record_error(self, result: NormalizationResult, entity_key: str, message: str) -> None:
        result.skipped += 1
        result.errors.append(ParseError(message))
        log.debug("changelog_entry_malformed", entity_key=entity_key, reason=message)


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    return str(value)


def _parse_author(raw: Any) -> HistoryAuthor | None:
    # Cloud sends accountId; Server/Data Center only name/key.
    if not isinstance(raw, dict):
        return None
    account_id = raw.get("accountId") or raw.get("key") or raw.get("name")
    if not account_id:
        return None
    return HistoryAuthor(
        account_id=str(account_id),
        display_name=str(raw.get("displayName") or account_id),
        email_address=_optional_str(raw.get("emailAddress")),
    )


def extract_field_changes(
    records: Iterable[HistoryRecord], field_names: Iterable[str]
) -> list[HistoryRecord]:
    """Keep only records touching the given fields, preserving order."""
    wanted = set(field_names)
    return [record for record in records if record.field_name in wanted]


def summarize_changes(records: Iterable[HistoryRecord]) -> dict[str, int]:
    """Count changes per field name."""
    return dict(Counter(record.field_name for record in records))


def group_by_change_type(records: Iterable[HistoryRecord]) -> dict[ChangeType, list[HistoryRecord]]:
    """Bucket records by ChangeType, preserving order inside each bucket."""
    groups: dict[ChangeType, list[HistoryRecord]] = {}
    for record in records:
        groups.setdefault(record.change_type, []).append(record)
    return groups
