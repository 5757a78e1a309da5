"""
Tests for exemption records: reconciliation, lifecycle, dates and listing.
"""
import json
from datetime import date, timedelta

import pytest

from error_handlers import FieldUpdateError, InvalidTransitionError, ValidationError
from layer1_capture import RawCapture
from layer2_normalize import ImageNormalizer
from layer3_extraction import ExtractedFields, ExtractionClient, ProviderCallError, RetryPolicy
from layer4_records import (
    MISSING,
    ExemptionDraft,
    ExemptionRecord,
    ExemptionSession,
    SessionState,
    clean_value,
    days_remaining,
    derive_end_date,
    draft_from_record,
    exemption_stats,
    exemption_summary,
    filter_exemptions,
    format_date,
    is_expired,
    new_record_id,
    reconcile,
)

MARIE = ExtractedFields(
    last_name=None,
    first_name="Marie",
    student_class="602",
    duration_days=5,
    start_date=date(2024, 3, 10),
    is_terminale=False,
)


class ScriptedProvider:
    def __init__(self, *answers):
        self.answers = list(answers)
        self.credential_configured = True

    def extract(self, payload, media_type):
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


def make_session(*answers, record=None):
    client = ExtractionClient(ScriptedProvider(*answers), retry_policy=RetryPolicy(),
                              sleep=lambda seconds: None)
    return ExemptionSession(ImageNormalizer(), client, record=record)


def make_record(record_id, last_name, first_name="Léa", student_class="5A",
                start=date(2024, 3, 1), days=3, parental=False, received=None):
    return ExemptionRecord(
        id=record_id,
        last_name=last_name,
        first_name=first_name,
        student_class=student_class,
        received_at=received or start,
        start_date=start,
        duration_days=days,
        is_parental_note=parental,
    )


class TestCleanValue:
    """Test placeholder cleaning."""

    @pytest.mark.parametrize("value", [
        None, "", "   ", "null", "NULL", "undefined", "Non renseignée", "NON RENSEIGNE",
        "à compléter", "A COMPLETER", " a compléter ",
    ])
    def test_placeholders_become_missing(self, value):
        """Test known placeholders map to MISSING."""
        assert clean_value(value) == MISSING

    @pytest.mark.parametrize("value", ["Marie", "602", "Jean-Pierre", "0"])
    def test_real_values_kept(self, value):
        """Test real values pass through."""
        assert clean_value(value) == value

    def test_value_is_trimmed(self):
        """Test surrounding whitespace is removed."""
        assert clean_value("  Dupont \n") == "Dupont"


class TestDates:
    """Test calendar-day arithmetic."""

    def test_leap_year_month_boundary(self):
        """Test 2024-02-28 plus 2 days is 2024-03-01."""
        assert derive_end_date("2024-02-28", 2) == date(2024, 3, 1)

    @pytest.mark.parametrize("days", [0, 1, 2, 29, 30, 31, 365, 366, 1000])
    def test_end_date_round_trip(self, days):
        """Test subtracting the duration from the end date gives the start back."""
        for start in (date(2024, 2, 28), date(2023, 12, 31), date(2025, 1, 1)):
            assert derive_end_date(start, days) - timedelta(days=days) == start

    def test_expiry_is_strict(self):
        """Test an exemption ending today is still active."""
        today = date(2024, 5, 10)
        assert not is_expired(date(2024, 5, 10), today)
        assert is_expired(date(2024, 5, 9), today)
        assert days_remaining("2024-05-12", today) == 2

    def test_format_date(self):
        """Test French display format."""
        assert format_date(date(2024, 3, 1)) == "01/03/2024"
        assert format_date(None) == ""


class TestReconcile:
    """Test the field reconciler."""

    def test_marie_scenario(self):
        """Test a missing last name stays MISSING and blocks submit."""
        draft = reconcile(MARIE, ExemptionDraft())

        assert draft.last_name == MISSING
        assert draft.first_name == "Marie"
        assert draft.student_class == "602"
        assert draft.duration_days == 5
        assert draft.start_date == date(2024, 3, 10)
        assert draft.is_terminale is False
        assert draft.is_parental_note is False

        session = make_session()
        session.draft = draft
        with pytest.raises(ValidationError) as exc_info:
            session.submit()
        assert exc_info.value.details["fields"] == ["last_name"]
        assert session.draft.first_name == "Marie"

    def test_idempotent(self):
        """Test reconciling twice from the same draft gives identical drafts."""
        initial = ExemptionDraft()
        first = reconcile(MARIE, initial)
        second = reconcile(MARIE, initial)
        assert json.dumps(first.to_dict(), sort_keys=True) == json.dumps(second.to_dict(), sort_keys=True)
        assert initial.first_name == MISSING

    def test_last_name_upper_cased(self):
        """Test last names are stored in capitals."""
        fields = ExtractedFields(last_name="  Dupont ", first_name="Marie")
        assert reconcile(fields, ExemptionDraft()).last_name == "DUPONT"

    def test_defaults_for_missing_duration_and_date(self):
        """Test null duration becomes 1 day and a null date keeps the draft's."""
        draft = ExemptionDraft(start_date=date(2024, 9, 2), duration_days=10)
        result = reconcile(ExtractedFields(), draft)
        assert result.duration_days == 1
        assert result.start_date == date(2024, 9, 2)
        assert result.is_terminale is False

    def test_parental_note_flag_overwritten(self):
        """Test a successful extraction always clears the parental-note flag."""
        draft = ExemptionDraft(is_parental_note=True)
        assert reconcile(MARIE, draft).is_parental_note is False

    def test_focus_clears_missing_only(self):
        """Test focusing a MISSING field empties it; real values are untouched."""
        draft = ExemptionDraft(first_name="Marie")
        assert draft.focus("last_name") is True
        assert draft.last_name == ""
        assert draft.focus("first_name") is False
        assert draft.first_name == "Marie"
        assert draft.missing_fields() == ["student_class"]

    def test_draft_from_record(self):
        """Test editing a record copies it, detecting PDF evidence."""
        record = ExemptionRecord(
            id="42", last_name="DURAND", first_name="Paul", student_class="",
            received_at=date(2024, 1, 2), start_date=date(2024, 1, 3), duration_days=7,
            photo="JVBERi0xLjQ=",
        )
        draft = draft_from_record(record)
        assert draft.record_id == "42"
        assert draft.student_class == MISSING
        assert draft.photo_media_type == "application/pdf"


class TestExemptionSession:
    """Test the editing session state machine."""

    def test_analyze_success(self, sample_jpeg):
        """Test a good extraction reconciles and attaches the document."""
        session = make_session(MARIE.to_dict())
        session.begin_capture()
        assert session.state == SessionState.CAPTURING

        draft = session.analyze(RawCapture(sample_jpeg, 'image/jpeg'))

        assert session.state == SessionState.RECONCILED
        assert draft.first_name == "Marie"
        assert draft.photo.startswith("/9j/")
        assert draft.error is None

    def test_failed_analysis_keeps_draft(self, sample_jpeg):
        """Test a provider failure preserves user edits and records the error."""
        session = make_session(ProviderCallError("500 Internal error", status_code=500))
        session.update_fields(lastName="Martin", durationDays=4)

        draft = session.analyze(RawCapture(sample_jpeg, 'image/jpeg'))

        assert session.state == SessionState.FAILED
        assert draft.last_name == "Martin"
        assert draft.duration_days == 4
        assert draft.photo == ""
        assert draft.error["error_code"] == "PROVIDER_ERROR"

        session.update_fields(firstName="Julie")
        assert session.state == SessionState.IDLE

    def test_oversize_document_fails_session(self):
        """Test the size ceiling surfaces through the session error."""
        session = make_session()
        session.normalizer.config.max_input_bytes = 4

        draft = session.analyze(RawCapture(b'0123456789', 'image/jpeg'))

        assert session.state == SessionState.FAILED
        assert draft.error["error_code"] == "PAYLOAD_TOO_LARGE"

    def test_cannot_submit_while_failed(self, sample_jpeg):
        """Test FAILED must be left before submitting."""
        session = make_session(ProviderCallError("500 boom", status_code=500))
        session.update_fields(lastName="Martin", firstName="Julie")
        session.analyze(RawCapture(sample_jpeg, 'image/jpeg'))

        with pytest.raises(InvalidTransitionError):
            session.submit()

        session.dismiss_error()
        record = session.submit()
        assert record.last_name == "Martin"

    def test_submit_builds_record(self):
        """Test manual entry submits with a derived end date."""
        session = make_session()
        session.update_fields(lastName="DUPONT", firstName="Marie", studentClass="602",
                              startDate="2024-02-28", durationDays=2)

        record = session.submit(existing_ids=[])

        assert record.end_date == date(2024, 3, 1)
        assert record.photo is None
        assert record.id.isdigit()
        assert session.state == SessionState.IDLE

    def test_parental_note(self):
        """Test parental notes last one day from today and carry no document."""
        session = make_session()
        session.draft.attach_document(b'%PDF-1.4', 'application/pdf')
        session.update_fields(lastName="Petit", firstName="Tom")

        session.mark_parental_note(today=date(2024, 6, 3))
        record = session.submit()

        assert record.is_parental_note
        assert record.duration_days == 1
        assert record.start_date == date(2024, 6, 3)
        assert record.photo is None

    def test_editing_keeps_id(self):
        """Test resubmitting an edited record keeps its id."""
        record = make_record("1700000000000", "BERNARD")
        session = make_session(record=record)
        session.update_fields(durationDays=10)

        updated = session.submit(existing_ids=[record.id])

        assert updated.id == record.id
        assert updated.duration_days == 10

    def test_update_rejects_unknown_field(self):
        """Test unknown or mistyped fields reject the whole update."""
        session = make_session()
        with pytest.raises(FieldUpdateError):
            session.update_fields(lastName="X", nickname="Y")
        assert session.draft.last_name == MISSING

        with pytest.raises(FieldUpdateError):
            session.update_fields(isTerminale="yes")
        with pytest.raises(FieldUpdateError):
            session.update_fields(startDate="soon")

    def test_duration_bounds(self):
        """Test durations outside 0 to ten years are refused and the draft is untouched."""
        session = make_session()
        session.update_fields(durationDays=4)

        for value in (99999999, -5, float('inf'), float('nan'), "3651"):
            with pytest.raises(FieldUpdateError):
                session.update_fields(durationDays=value)
            assert session.draft.duration_days == 4

        session.update_fields(durationDays=0)
        assert session.draft.duration_days == 0
        session.update_fields(durationDays="3650")
        assert session.draft.duration_days == 3650
        session.update_fields(durationDays="")
        assert session.draft.duration_days == 0

    def test_out_of_range_answer_fails_session(self, sample_jpeg):
        """Test an absurd extracted duration fails the analysis instead of the draft."""
        session = make_session({**MARIE.to_dict(), "durationDays": 5000000})

        draft = session.analyze(RawCapture(sample_jpeg, 'image/jpeg'))

        assert session.state == SessionState.FAILED
        assert draft.error["error_code"] == "MALFORMED_RESPONSE"
        assert draft.duration_days == 1
        assert session.to_dict()["state"] == "failed"

    def test_cancel_capture(self):
        """Test a cancelled capture returns to IDLE."""
        session = make_session()
        session.begin_capture()
        session.cancel_capture()
        assert session.state == SessionState.IDLE
        with pytest.raises(InvalidTransitionError):
            session.cancel_capture()

    def test_edits_refused_while_analyzing(self):
        """Test the draft is locked during analysis."""
        session = make_session()
        session.state = SessionState.ANALYZING
        with pytest.raises(InvalidTransitionError):
            session.update_fields(lastName="X")
        with pytest.raises(InvalidTransitionError):
            session.analyze(RawCapture(b'x', 'image/jpeg'))


class TestRecords:
    """Test record serialization."""

    def test_round_trip_recomputes_end_date(self):
        """Test stored end dates are ignored and recomputed."""
        data = make_record("1", "DUPONT", start=date(2024, 2, 28), days=2).to_dict()
        data["endDate"] = "1999-01-01"
        record = ExemptionRecord.from_dict(data)
        assert record.end_date == date(2024, 3, 1)
        assert record.to_dict()["endDate"] == "2024-03-01"

    def test_parental_note_photo_dropped(self):
        """Test parental notes never keep a document."""
        data = make_record("2", "PETIT", parental=True).to_dict()
        data["photoBase64"] = "abc"
        assert ExemptionRecord.from_dict(data).photo is None

    def test_out_of_range_duration_refused(self):
        """Test stored durations outside 0 to ten years do not load."""
        data = make_record("3", "DUPONT").to_dict()
        for value in (99999999, -1, float('inf')):
            data["durationDays"] = value
            with pytest.raises(ValueError):
                ExemptionRecord.from_dict(data)

    def test_new_record_id_unique(self):
        """Test generated ids skip existing ones."""
        first = new_record_id()
        second = new_record_id([first, str(int(first) + 1)])
        assert second not in (first, str(int(first) + 1))


class TestListing:
    """Test dashboard filtering, sorting and counts."""

    TODAY = date(2024, 3, 10)

    @pytest.fixture
    def records(self):
        return [
            make_record("1", "ÉMILE", first_name="Zoé", student_class="3B", start=date(2024, 3, 8), days=5),
            make_record("2", "ADAM", first_name="Hugo", student_class="6A", start=date(2024, 1, 5), days=2),
            make_record("3", "MARTIN", first_name="Léa", student_class="4C", start=date(2024, 3, 9), days=1,
                        parental=True),
        ]

    def test_default_sort_newest_first(self, records):
        """Test the default order is by start date, newest first."""
        result = filter_exemptions(records, today=self.TODAY)
        assert [r.id for r in result] == ["3", "1", "2"]

    def test_alpha_sort_ignores_accents(self, records):
        """Test alphabetical sort treats É like E."""
        result = filter_exemptions(records, sort_order='ALPHA_ASC', today=self.TODAY)
        assert [r.last_name for r in result] == ["ADAM", "ÉMILE", "MARTIN"]
        result = filter_exemptions(records, sort_order='ALPHA_DESC', today=self.TODAY)
        assert [r.last_name for r in result] == ["MARTIN", "ÉMILE", "ADAM"]

    def test_class_sort(self, records):
        """Test sorting by class."""
        result = filter_exemptions(records, sort_order='CLASS_ASC', today=self.TODAY)
        assert [r.student_class for r in result] == ["3B", "4C", "6A"]

    def test_search_full_name_and_class(self, records):
        """Test search matches 'first last' and the class."""
        assert [r.id for r in filter_exemptions(records, search="hugo ad")] == ["2"]
        assert [r.id for r in filter_exemptions(records, search="4c")] == ["3"]
        assert [r.id for r in filter_exemptions(records, search="zoe")] == ["1"]

    def test_type_and_status_filters(self, records):
        """Test certificate/note and active/expired filters."""
        notes = filter_exemptions(records, type_filter='NOTE', today=self.TODAY)
        assert [r.id for r in notes] == ["3"]

        expired = filter_exemptions(records, status_filter='EXPIRED', today=self.TODAY)
        assert [r.id for r in expired] == ["2"]

        active_certificates = filter_exemptions(records, type_filter='CERTIF', status_filter='ACTIVE',
                                                today=self.TODAY)
        assert [r.id for r in active_certificates] == ["1"]

    def test_unknown_filter(self, records):
        """Test unknown filter values are refused."""
        with pytest.raises(ValueError):
            filter_exemptions(records, sort_order='RANDOM')

    def test_stats(self, records):
        """Test active and expired counts."""
        assert exemption_stats(records, today=self.TODAY) == {"total": 3, "active": 2, "expired": 1}

    def test_summary(self, records):
        """Test the card form carries status, days left and display dates."""
        active = exemption_summary(records[0], today=self.TODAY)
        assert active["id"] == "1"
        assert active["expired"] is False
        assert active["daysRemaining"] == 3
        assert active["endingSoon"] is True
        assert active["startDateDisplay"] == "08/03/2024"
        assert active["endDateDisplay"] == "13/03/2024"

        expired = exemption_summary(records[1], today=self.TODAY)
        assert expired["expired"] is True
        assert expired["daysRemaining"] < 0
        assert expired["endingSoon"] is False
