"""
Tests for the message service: inbound ingestion, staff sends and
commands, delivery-status callbacks.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from careloop.engine.analysis.config import AIConfig
from careloop.engine.channels import DispatcherRegistry
from careloop.engine.checkins import CheckInRecorder
from careloop.engine.commands import AutomationControl, CommandResult
from careloop.engine.errors import NotFoundError
from careloop.engine.messages import MessageService, media_placeholder, normalize_phone
from careloop.engine.models import (
    ChatMode,
    CheckInType,
    DeliveryStatus,
    MessageDirection,
    MessageSender,
)
from careloop.engine.outbox import Outbox
from careloop.engine.schedule import ScheduleMatcher
from careloop.engine.store import EngineStore
from careloop.engine.tests.factories import (
    NOW,
    RecordingDispatcher,
    make_patient,
    make_program,
    no_sleep,
)


@pytest.fixture
def store():
    return EngineStore()


@pytest.fixture
def config():
    return AIConfig()


@pytest.fixture
def aggregator():
    agg = MagicMock()
    agg.on_inbound_message = AsyncMock()
    return agg


@pytest.fixture
def transport():
    return RecordingDispatcher()


@pytest.fixture
def service(store, aggregator, config, transport):
    registry = DispatcherRegistry(sleep=no_sleep)
    registry.register(transport)
    return MessageService(
        store,
        CheckInRecorder(store, ScheduleMatcher(store)),
        Outbox(store, registry),
        AutomationControl(store),
        aggregator,
        config=lambda: config,
    )


class TestHelpers:

    @pytest.mark.parametrize("raw,expected", [
        ("+7 (701) 000-00-01", "77010000001"),
        ("87010000001", "77010000001"),
        ("whatsapp", ""),
        (None, ""),
    ])
    def test_normalize_phone(self, raw, expected):
        assert normalize_phone(raw) == expected

    def test_media_placeholder(self):
        assert media_placeholder("image/png") == "[Photo from patient]"
        assert media_placeholder("audio/ogg") == "[Audio message]"
        assert media_placeholder(None) == "[Media file]"


class TestInbound:

    @pytest.mark.asyncio
    async def test_saves_and_forwards_to_aggregator(self, store, service, aggregator):
        patient = make_patient(store)

        message = await service.save_inbound("+7 701 000 00 01", " Hello ", external_id="SMin1", now=NOW)

        assert message.content == "Hello"
        assert message.direction == MessageDirection.INBOUND
        assert message.sender == MessageSender.PATIENT
        assert store.get_patient(patient.id).messages_since_summary == 1
        aggregator.on_inbound_message.assert_awaited_once_with(patient.id, "Hello", message.id)

    @pytest.mark.asyncio
    async def test_unknown_phone_is_ignored(self, service, aggregator):
        assert await service.save_inbound("+10000000000", "hi") is None
        aggregator.on_inbound_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_duplicate_external_id_is_ignored(self, store, service):
        patient = make_patient(store)
        await service.save_inbound(patient.phone, "hi", external_id="SMdup", now=NOW)
        assert await service.save_inbound(patient.phone, "hi", external_id="SMdup", now=NOW) is None
        assert len(store.list_messages(patient.id)) == 1

    @pytest.mark.asyncio
    async def test_numeric_answer_becomes_check_in(self, store, service):
        patient = make_patient(store)
        make_program(store, patient.id)

        message = await service.save_inbound(patient.phone, "78.5", now=NOW)

        assert message.linked_check_in_id is not None
        check_ins = store.list_check_ins(patient.id)
        assert check_ins[0].type == CheckInType.WEIGHT
        assert check_ins[0].value_number == 78.5

    @pytest.mark.asyncio
    async def test_media_only_message_gets_placeholder(self, store, service):
        patient = make_patient(store)
        message = await service.save_inbound(
            patient.phone, "", media_url="https://cdn.example/p.jpg", media_type="image/jpeg", now=NOW,
        )
        assert message.content == "[Photo from patient]"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("overrides", [
        {"chat_mode": ChatMode.HUMAN},
        {"chat_mode": ChatMode.PAUSED},
        {"automation_paused": True},
    ])
    async def test_not_automated_is_stored_but_not_analyzed(self, store, service, aggregator, overrides):
        patient = make_patient(store, **overrides)

        assert await service.save_inbound(patient.phone, "hi", now=NOW) is not None
        aggregator.on_inbound_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_ai_disabled_skips_aggregator(self, store, service, aggregator, config):
        config.enabled = False
        patient = make_patient(store)
        await service.save_inbound(patient.phone, "hi", now=NOW)
        aggregator.on_inbound_message.assert_not_awaited()


class TestStaffMessages:

    @pytest.mark.asyncio
    async def test_staff_message_is_sent(self, store, service, transport):
        patient = make_patient(store)

        message = await service.send_staff_message(patient.id, "Hi, this is nurse Kim", "nurse.kim")

        assert message.sender == MessageSender.STAFF
        assert message.sender_id == "nurse.kim"
        assert transport.sent[0].text == "Hi, this is nurse Kim"

    @pytest.mark.asyncio
    async def test_command_is_not_sent(self, store, service, transport):
        patient = make_patient(store)

        result = await service.send_staff_message(patient.id, "#ai off", "nurse.kim")

        assert isinstance(result, CommandResult)
        assert result.ai_enabled is False
        assert transport.sent == []
        assert store.get_patient(patient.id).automation_paused is True

    @pytest.mark.asyncio
    async def test_unknown_patient(self, service):
        with pytest.raises(NotFoundError):
            await service.send_staff_message("ghost", "hello")


class TestDeliveryStatus:

    @pytest.mark.asyncio
    async def test_status_moves_forward_only(self, store, service):
        patient = make_patient(store)
        message = await service.send_staff_message(patient.id, "hello")

        assert service.update_delivery_status("SM0001", "delivered") == 1
        assert store.get_message(message.id).delivery_status == DeliveryStatus.DELIVERED
        assert service.update_delivery_status("SM0001", "sent") == 0
        assert store.get_message(message.id).delivery_status == DeliveryStatus.DELIVERED

    @pytest.mark.asyncio
    async def test_failure_records_error(self, store, service):
        patient = make_patient(store)
        message = await service.send_staff_message(patient.id, "hello")

        assert service.update_delivery_status("SM0001", "undelivered", "Twilio error 30003") == 1
        stored = store.get_message(message.id)
        assert stored.delivery_status == DeliveryStatus.FAILED
        assert stored.delivery_error == "Twilio error 30003"

    def test_unknown_status_or_id(self, service):
        assert service.update_delivery_status("SM0001", "exploded") == 0
        assert service.update_delivery_status("", "delivered") == 0
        assert service.update_delivery_status("SMnone", "delivered") == 0

    def test_list_messages_requires_patient(self, service):
        with pytest.raises(NotFoundError):
            service.list_messages("ghost")
