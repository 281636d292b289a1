"""Pydantic schemas: resolution wire format and rule files.

Legacy field names are migrated onto the canonical ones here, at the
boundary; nothing past this module sees them.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from bulk_editor.errors import ValidationError

logger = logging.getLogger(__name__)

# -- Resolution ---------------------------------------------------------------


class ResolvedRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", frozen=True)

    title: str = Field("", alias="Title")
    status: str = Field("", alias="Status")
    content_id: str = Field("", alias="Content_ID")
    document_id: str = Field("", alias="Document_ID")

    @field_validator("title", "status", "content_id", "document_id", mode="before")
    @classmethod
    def _none_to_empty(cls, v: Any) -> Any:
        if v is None:
            return ""
        if isinstance(v, int | float):
            return str(v)
        return v

    @property
    def is_expired(self) -> bool:
        return self.status.strip().casefold() == "expired"

    @property
    def is_not_found(self) -> bool:
        return self.status.strip().casefold() == "not found"


class ResolutionRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    lookup_ids: list[str] = Field(..., alias="lookupIds")
    timestamp: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


class _LegacyBody(BaseModel):
    model_config = ConfigDict(extra="ignore")

    Results: list[ResolvedRecord] = Field(default_factory=list)
    Version: str | None = None
    Changes: str | None = None


class _LegacyEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    StatusCode: str | int | None = None
    Body: _LegacyBody


def parse_resolution_payload(payload: Any) -> dict[str, ResolvedRecord]:
    """Normalize a resolution response body into ``lookup id -> record``.

    Accepts the keyed-object shape and the legacy ``Body.Results`` envelope.
    Raises ``ValueError`` for anything else.
    """
    if not isinstance(payload, dict):
        raise ValueError(f"expected a JSON object, got {type(payload).__name__}")

    if "Body" in payload:
        try:
            env = _LegacyEnvelope.model_validate(payload)
        except pydantic.ValidationError as e:
            raise ValueError(f"malformed legacy envelope: {e}") from e
        out: dict[str, ResolvedRecord] = {}
        for rec in env.Body.Results:
            for key in (rec.content_id, rec.document_id):
                if key:
                    out[key] = rec
                    out.setdefault(key.upper(), rec)
        return out

    out = {}
    for key, value in payload.items():
        if not isinstance(value, dict):
            raise ValueError(f"entry for {key!r} is not an object")
        try:
            out[key] = ResolvedRecord.model_validate(value)
        except pydantic.ValidationError as e:
            raise ValueError(f"malformed entry for {key!r}: {e}") from e
    return out


# -- Rules --------------------------------------------------------------------


class MatchType(str, Enum):
    CONTAINS = "Contains"
    STARTS_WITH = "StartsWith"
    ENDS_WITH = "EndsWith"
    EXACT = "Exact"
    REGEX = "Regex"

    @classmethod
    def _missing_(cls, value: object) -> MatchType | None:
        if isinstance(value, str):
            key = value.replace("_", "").replace(" ", "").casefold()
            for member in cls:
                if member.value.casefold() == key:
                    return member
        return None


_RULE_ALIASES = {
    "OldTitle": "find_text",
    "FindText": "find_text",
    "findText": "find_text",
    "NewFullContentId": "replace_text",
    "ReplaceText": "replace_text",
    "replaceText": "replace_text",
    "MatchType": "match_type",
    "matchType": "match_type",
    "IsEnabled": "enabled",
    "Enabled": "enabled",
    "isEnabled": "enabled",
}

_TEXT_RULE_ALIASES = {
    "OldText": "old_text",
    "oldText": "old_text",
    "NewText": "new_text",
    "newText": "new_text",
    "CaseSensitive": "case_sensitive",
    "caseSensitive": "case_sensitive",
    "WholeWordsOnly": "whole_words_only",
    "wholeWordsOnly": "whole_words_only",
    "IsEnabled": "enabled",
    "Enabled": "enabled",
}


def _migrate(data: Any, aliases: dict[str, str]) -> Any:
    if not isinstance(data, dict):
        return data
    out: dict[str, Any] = {}
    for k, v in data.items():
        canonical = aliases.get(k, k)
        # canonical names win over legacy ones when both are present
        if canonical in out and k != canonical:
            continue
        out[canonical] = v
    return out


class ReplacementRule(BaseModel):
    """Hyperlink title rule: matching display text is repointed at ``replace_text``."""

    find_text: str = Field(..., min_length=1)
    replace_text: str = Field(..., min_length=1, description="Full lookup id of the target")
    match_type: MatchType = MatchType.EXACT
    enabled: bool = True

    @model_validator(mode="before")
    @classmethod
    def _migrate_legacy_names(cls, data: Any) -> Any:
        return _migrate(data, _RULE_ALIASES)

    @model_validator(mode="after")
    def _check_regex(self) -> ReplacementRule:
        if self.match_type is MatchType.REGEX:
            try:
                re.compile(self.find_text)
            except re.error as e:
                raise ValueError(f"invalid regex {self.find_text!r}: {e}") from e
        return self


class TextReplacementRule(BaseModel):
    old_text: str = ""
    new_text: str = ""
    case_sensitive: bool = False
    whole_words_only: bool = False
    enabled: bool = True

    @model_validator(mode="before")
    @classmethod
    def _migrate_legacy_names(cls, data: Any) -> Any:
        return _migrate(data, _TEXT_RULE_ALIASES)

    def is_valid(self) -> bool:
        return self.enabled and bool(self.old_text)


def _load_entries(path: str | Path) -> list[Any]:
    try:
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(f"cannot read rules file {path}: {e}") from e
    if isinstance(raw, dict):
        raw = raw.get("rules", raw.get("Rules", []))
    if not isinstance(raw, list):
        raise ValidationError(f"rules file {path} must hold a list of rules")
    return raw


def load_replacement_rules(path: str | Path) -> list[ReplacementRule]:
    """Load hyperlink rules; malformed entries are skipped with a warning."""
    rules: list[ReplacementRule] = []
    for i, entry in enumerate(_load_entries(path)):
        try:
            rules.append(ReplacementRule.model_validate(entry))
        except pydantic.ValidationError as e:
            logger.warning("Skipping hyperlink rule #%d in %s: %s", i, path, e)
    return rules


def load_text_rules(path: str | Path) -> list[TextReplacementRule]:
    rules: list[TextReplacementRule] = []
    for i, entry in enumerate(_load_entries(path)):
        try:
            rule = TextReplacementRule.model_validate(entry)
        except pydantic.ValidationError as e:
            logger.warning("Skipping text rule #%d in %s: %s", i, path, e)
            continue
        if not rule.old_text:
            logger.warning("Skipping text rule #%d in %s: empty old_text", i, path)
            continue
        rules.append(rule)
    return rules
