"""
Tests for the Check-in Recorder.

Tests cover:
  - "78.5" at 09:20 against WEIGHT at 09:00 → CheckIn(WEIGHT, 78.5, PATIENT)
  - a second identical message the same day creates nothing
  - media attachments are recorded immediately
  - free text waits for analysis (record_confirmed, source AI)
  - extracted observations: type mapping, one structured row per day
"""

from datetime import timedelta

import pytest

from careloop.engine.analysis.types import ExtractedCheckIn, ExtractedType
from careloop.engine.checkins import CheckInRecorder, parse_numeric_answer
from careloop.engine.models import (
    CheckInSource,
    CheckInType,
    Message,
    MessageDirection,
    MessageSender,
)
from careloop.engine.schedule import ScheduleMatcher
from careloop.engine.store import EngineStore
from careloop.engine.tests.factories import NOW, make_patient, make_program


@pytest.fixture
def store():
    return EngineStore()


@pytest.fixture
def recorder(store):
    return CheckInRecorder(store, ScheduleMatcher(store))


def _inbound(store, patient_id, content="", **extra) -> Message:
    message = Message(
        patient_id=patient_id,
        direction=MessageDirection.INBOUND,
        sender=MessageSender.PATIENT,
        content=content,
        created_at=extra.pop("created_at", NOW),
        **extra,
    )
    store.save_message(message)
    return message


class TestParseNumericAnswer:

    @pytest.mark.parametrize("text,expected", [
        ("78.5", 78.5),
        ("78,5 kg", 78.5),
        ("80кг", 80.0),
        ("7 h", 7.0),
        ("10000 steps", 10000.0),
    ])
    def test_numbers(self, text, expected):
        assert parse_numeric_answer(text) == expected

    @pytest.mark.parametrize("text", ["", None, "about 80", "80 and tired", "hello"])
    def test_not_numbers(self, text):
        assert parse_numeric_answer(text) is None


class TestRecordFromMessage:

    def test_numeric_answer_records_weight(self, store, recorder):
        patient = make_patient(store)
        make_program(store, patient.id)
        message = _inbound(store, patient.id, "78.5")

        check_in_id = recorder.record_from_message(message, NOW)

        check_in = store.get_check_in(check_in_id)
        assert check_in.type == CheckInType.WEIGHT
        assert check_in.value_number == 78.5
        assert check_in.source == CheckInSource.PATIENT
        assert store.get_message(message.id).linked_check_in_id == check_in_id

    def test_second_identical_message_creates_nothing(self, store, recorder):
        patient = make_patient(store)
        make_program(store, patient.id)

        first = recorder.record_from_message(_inbound(store, patient.id, "78.5"), NOW)
        second = recorder.record_from_message(
            _inbound(store, patient.id, "78.5", created_at=NOW + timedelta(minutes=5)),
            NOW + timedelta(minutes=5),
        )

        assert first is not None
        assert second is None
        assert len(store.list_check_ins(patient.id)) == 1

    def test_media_is_recorded_immediately(self, store, recorder):
        patient = make_patient(store)
        make_program(store, patient.id)
        message = _inbound(
            store, patient.id, "[Photo from patient]",
            media_url="https://cdn.example/scale.jpg", media_type="image/jpeg",
        )

        check_in = store.get_check_in(recorder.record_from_message(message, NOW))
        assert check_in.media.url == "https://cdn.example/scale.jpg"
        assert check_in.source == CheckInSource.PATIENT

    def test_free_text_waits_for_analysis(self, store, recorder):
        patient = make_patient(store)
        make_program(store, patient.id)

        assert recorder.record_from_message(_inbound(store, patient.id, "I weighed myself"), NOW) is None
        assert store.list_check_ins(patient.id) == []

    def test_no_candidate_no_check_in(self, store, recorder):
        patient = make_patient(store)
        assert recorder.record_from_message(_inbound(store, patient.id, "78.5"), NOW) is None


class TestRecordConfirmed:

    def test_records_candidate_with_ai_source(self, store, recorder):
        patient = make_patient(store)
        make_program(store, patient.id)
        message = _inbound(store, patient.id, "weighed in, all good")

        check_in_id = recorder.record_confirmed(
            patient.id, "weighed in, all good", message_id=message.id, now=NOW,
        )

        check_in = store.get_check_in(check_in_id)
        assert check_in.source == CheckInSource.AI
        assert check_in.value_text == "weighed in, all good"
        assert store.get_message(message.id).linked_check_in_id == check_in_id

    def test_nothing_open(self, store, recorder):
        patient = make_patient(store)
        assert recorder.record_confirmed(patient.id, "ok", now=NOW) is None


class TestRecordExtracted:

    def test_maps_types_and_skips_duplicates(self, store, recorder):
        patient = make_patient(store)
        extracted = [
            ExtractedCheckIn(type=ExtractedType.WEIGHT, value_number=81.2),
            ExtractedCheckIn(type=ExtractedType.WEIGHT, value_number=81.0),
            ExtractedCheckIn(type=ExtractedType.FOOD_LOG, value_text="porridge"),
        ]

        saved = recorder.record_extracted(patient.id, extracted, NOW)

        assert len(saved) == 2
        rows = {c.type: c for c in store.list_check_ins(patient.id)}
        assert rows[CheckInType.WEIGHT].value_number == 81.2
        assert rows[CheckInType.WEIGHT].source == CheckInSource.AI
        assert rows[CheckInType.FREE_TEXT].value_text == "[FOOD_LOG] porridge"
