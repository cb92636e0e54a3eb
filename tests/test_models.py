"""Tests for model schema protection, request validation and number formatting."""
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from episode_rpc.errors import (
    InvalidCount,
    InvalidFormatOptions,
    InvalidIdentifier,
    InvalidSequenceName,
)
from episode_rpc.models import (
    Approval,
    CodeableConcept,
    Coding,
    EpisodeStatus,
    FormatOptions,
    Period,
    Reference,
    RequestValidator,
    StatusHistoryEntry,
    luhn_check_digit,
    mod11_check_digit,
)
from conftest import build_diagnosis, build_episode, new_id


class TestSchemaProtection:
    """Structurally invalid data is rejected before it reaches storage."""

    def test_coding_rejects_non_uri_system(self):
        with pytest.raises(ValueError, match="must be a valid URI"):
            Coding(code="123", system="not-a-uri")

    def test_coding_accepts_ehealth_dictionary(self):
        c = Coding(code="I10", system="eHealth/ICD10_AM/condition_codes")
        assert c.system.startswith("eHealth/")

    def test_codeable_concept_needs_coding_or_text(self):
        with pytest.raises(ValueError, match="at least one coding or text"):
            CodeableConcept()
        assert CodeableConcept(text="Free text only").text == "Free text only"

    def test_period_rejects_end_before_start(self):
        with pytest.raises(ValueError, match="end must be after or equal to start"):
            Period(start="2020-01-10T00:00:00", end="2020-01-01T00:00:00")

    def test_diagnosis_evidence_must_be_report_or_condition(self):
        with pytest.raises(ValueError, match="evidence must reference"):
            build_diagnosis(evidence=Reference(type="observation", id=new_id()))
        d = build_diagnosis(evidence=Reference(type="diagnostic_report", id=new_id()))
        assert d.evidence.type == "diagnostic_report"

    def test_diagnosis_rank_is_positive(self):
        with pytest.raises(ValidationError):
            build_diagnosis(rank=0)

    def test_approval_grantee_must_be_legal_entity_or_employee(self):
        with pytest.raises(ValueError, match="legal_entity or employee"):
            Approval(
                id=new_id(),
                episode=Reference(type="episode_of_care", id=new_id()),
                granted_to=Reference(type="patient", id=new_id()),
                period=Period(start=datetime.now(timezone.utc)),
            )

    def test_approval_period_needs_start(self):
        with pytest.raises(ValueError, match="must have a start"):
            Approval(
                id=new_id(),
                episode=Reference(type="episode_of_care", id=new_id()),
                granted_to=Reference(type="legal_entity", id=new_id()),
                period=Period(),
            )


class TestEpisodeAggregate:

    def test_status_is_last_status_history_entry(self):
        ep = build_episode()
        ep.status_history.append(
            StatusHistoryEntry(status="closed", changed_at=datetime.now(timezone.utc))
        )
        assert ep.status == EpisodeStatus.CLOSED
        assert ep.model_dump(mode="json")["status"] == "closed"

    def test_episode_requires_status_history(self):
        with pytest.raises(ValidationError):
            build_episode(status_history=[])

    def test_active_primary_is_most_recent_primary(self):
        first = build_diagnosis(code="I10", role="primary")
        secondary = build_diagnosis(code="E11", role="secondary")
        latest = build_diagnosis(code="I11", role="primary")
        ep = build_episode(diagnoses_history=[first, secondary, latest])
        assert ep.active_primary_diagnosis == latest

    def test_no_primary_means_no_active_primary(self):
        ep = build_episode(diagnoses_history=[build_diagnosis(role="comorbidity")])
        assert ep.active_primary_diagnosis is None


class TestRequestValidator:

    def test_accepts_canonical_uuid(self):
        rid = new_id()
        assert RequestValidator.validate_resource_id(rid) == rid

    @pytest.mark.parametrize("bad", ["", "123", "not-a-uuid", None, 42,
                                     "6ce2d4a68cfb4e4fa8f98f0e0e2c2a11"])
    def test_rejects_malformed_ids(self, bad):
        with pytest.raises(InvalidIdentifier):
            RequestValidator.validate_resource_id(bad)

    @pytest.mark.parametrize("name", ["episode-number-2024", "le:1b3a/2024", "A.b_c"])
    def test_accepts_sequence_names(self, name):
        assert RequestValidator.validate_sequence_name(name) == name

    @pytest.mark.parametrize("name", ["", "-leading", "has space", "x" * 200, None])
    def test_rejects_sequence_names(self, name):
        with pytest.raises(InvalidSequenceName):
            RequestValidator.validate_sequence_name(name)

    @pytest.mark.parametrize("count", [0, -1, True, 1.5, "3", 10_001])
    def test_rejects_counts(self, count):
        with pytest.raises(InvalidCount):
            RequestValidator.validate_count(count, max_count=10_000)

    def test_parse_format_options_wraps_errors(self):
        with pytest.raises(InvalidFormatOptions):
            RequestValidator.parse_format_options({"template": "EP-%s-%d"})
        opts = RequestValidator.parse_format_options({"template": "EP-%06d"})
        assert isinstance(opts, FormatOptions)


class TestFormatOptions:

    def test_template_formatting(self):
        assert FormatOptions(template="EP-%06d").format(11) == "EP-000011"

    def test_width_prefix_suffix(self):
        opts = FormatOptions(width=4, prefix="DOC-", suffix="/24")
        assert opts.format(7) == "DOC-0007/24"

    def test_default_is_plain_integer(self):
        assert FormatOptions().format(42) == "42"

    @pytest.mark.parametrize("template", ["EP-%s", "%d-%d", "no conversion", "%f"])
    def test_template_requires_one_integer_conversion(self, template):
        with pytest.raises(ValidationError):
            FormatOptions(template=template)

    def test_literal_percent_is_allowed(self):
        assert FormatOptions(template="%%%03d").format(5) == "%005"

    def test_luhn_check_digit(self):
        assert luhn_check_digit(7992739871) == "3"

    def test_mod11_check_digit(self):
        assert mod11_check_digit(123) == "6"

    def test_checksum_goes_before_suffix(self):
        opts = FormatOptions(template="%010d", checksum="luhn", suffix="-X")
        assert opts.format(7992739871) == "79927398713-X"

    @pytest.mark.parametrize("template", ["%099999999999999999999d", "EP-%033d", "%-40d"])
    def test_template_width_is_bounded(self, template):
        with pytest.raises(ValidationError, match="field width must not exceed 32"):
            FormatOptions(template=template)

    def test_template_at_maximum_width(self):
        assert len(FormatOptions(template="%032d").format(1)) == 32

    def test_check_digits_reject_negative_values(self):
        with pytest.raises(ValueError, match="non-negative"):
            luhn_check_digit(-3)
        with pytest.raises(ValueError, match="non-negative"):
            mod11_check_digit(-3)


class TestPeriodTimezones:

    def test_naive_end_is_compared_as_utc(self):
        p = Period(start="2024-01-01T00:00:00Z", end="2024-02-01T00:00:00")
        assert p.end.tzinfo is None

    def test_naive_end_before_aware_start_is_rejected(self):
        with pytest.raises(ValidationError, match="end must be after or equal to start"):
            Period(start="2024-02-01T00:00:00+00:00", end="2024-01-01T00:00:00")

    def test_offsets_are_normalised(self):
        # 01:00+02:00 is 23:00Z the previous day
        with pytest.raises(ValidationError):
            Period(start="2024-01-01T00:00:00Z", end="2024-01-01T01:00:00+02:00")
