from __future__ import annotations

import json

import pydantic
import pytest

from bulk_editor.errors import ValidationError
from bulk_editor.models import (
    MatchType,
    ReplacementRule,
    ResolutionRequest,
    ResolvedRecord,
    TextReplacementRule,
    load_replacement_rules,
    load_text_rules,
    parse_resolution_payload,
)


class TestResolvedRecord:
    def test_wire_aliases_and_nulls(self):
        rec = ResolvedRecord.model_validate(
            {"Title": "Policy Doc", "Status": None, "Content_ID": 12345, "Document_ID": "d-1", "Extra": 1}
        )
        assert rec.title == "Policy Doc"
        assert rec.status == ""
        assert rec.content_id == "12345"
        assert rec.document_id == "d-1"

    def test_status_flags(self):
        assert ResolvedRecord(status=" expired ").is_expired
        assert ResolvedRecord(status="Not Found").is_not_found
        assert not ResolvedRecord(status="Released").is_expired


class TestResolutionPayload:
    def test_keyed_object(self):
        out = parse_resolution_payload({"TSRC-A-000001": {"Title": "T", "Status": "Active"}})
        assert out["TSRC-A-000001"].title == "T"

    def test_legacy_envelope_upper_cases_keys(self):
        out = parse_resolution_payload(
            {"Body": {"Results": [{"Title": "T", "Content_ID": "tsrc-a-000001", "Document_ID": "abc"}]}}
        )
        assert set(out) == {"tsrc-a-000001", "TSRC-A-000001", "abc", "ABC"}

    @pytest.mark.parametrize("payload", [[], "x", {"TSRC-A-000001": "not an object"}, {"Body": "nope"}])
    def test_malformed(self, payload):
        with pytest.raises(ValueError):
            parse_resolution_payload(payload)

    def test_request_wire_shape(self):
        wire = ResolutionRequest(lookup_ids=["a", "b"]).to_wire()
        assert wire["lookupIds"] == ["a", "b"]
        assert wire["timestamp"]


class TestReplacementRule:
    def test_legacy_field_names(self):
        rule = ReplacementRule.model_validate(
            {"OldTitle": "Old", "NewFullContentId": "TSRC-X-000001", "IsEnabled": False}
        )
        assert (rule.find_text, rule.replace_text, rule.enabled) == ("Old", "TSRC-X-000001", False)
        assert rule.match_type is MatchType.EXACT

    def test_canonical_name_wins(self):
        rule = ReplacementRule.model_validate(
            {"find_text": "canonical", "OldTitle": "legacy", "replace_text": "TSRC-X-000001"}
        )
        assert rule.find_text == "canonical"

    @pytest.mark.parametrize("raw", ["starts_with", "StartsWith", "startswith", "Starts With"])
    def test_match_type_is_lenient(self, raw):
        assert MatchType(raw) is MatchType.STARTS_WITH

    def test_invalid_regex_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            ReplacementRule(find_text="(", replace_text="TSRC-X-000001", match_type=MatchType.REGEX)

    def test_empty_fields_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            ReplacementRule(find_text="", replace_text="TSRC-X-000001")


class TestTextReplacementRule:
    def test_legacy_names_and_validity(self):
        rule = TextReplacementRule.model_validate({"OldText": "cat", "NewText": "dog", "WholeWordsOnly": True})
        assert rule.whole_words_only
        assert rule.is_valid()
        assert not TextReplacementRule(old_text="").is_valid()
        assert not TextReplacementRule(old_text="x", enabled=False).is_valid()


class TestLoaders:
    def test_bad_entries_are_skipped(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(
            json.dumps(
                {
                    "rules": [
                        {"OldTitle": "A", "NewFullContentId": "TSRC-X-000001"},
                        {"OldTitle": "", "NewFullContentId": "TSRC-X-000002"},
                        {"find_text": "(", "replace_text": "TSRC-X-000003", "match_type": "Regex"},
                    ]
                }
            )
        )
        rules = load_replacement_rules(path)
        assert [r.replace_text for r in rules] == ["TSRC-X-000001"]

    def test_text_rules_list(self, tmp_path):
        path = tmp_path / "text.json"
        path.write_text(json.dumps([{"old_text": "a", "new_text": "b"}, {"old_text": "", "new_text": "c"}]))
        rules = load_text_rules(path)
        assert [(r.old_text, r.new_text) for r in rules] == [("a", "b")]

    def test_unreadable_file(self, tmp_path):
        with pytest.raises(ValidationError):
            load_replacement_rules(tmp_path / "missing.json")

    def test_wrong_shape(self, tmp_path):
        path = tmp_path / "rules.json"
        path.write_text(json.dumps({"rules": "nope"}))
        with pytest.raises(ValidationError):
            load_text_rules(path)
