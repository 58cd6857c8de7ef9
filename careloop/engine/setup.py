"""
Engine Setup — initializes and wires together all engine components.

Called once during app startup.  ``build_engine`` only constructs
objects; ``initialize_engine`` also starts the queue workers and the
sweep scheduler.  If no provider key or transport credentials are set the
engine still starts: analysis returns None and sends are stored FAILED.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from careloop import settings
from careloop.engine.aggregator import MessageAggregator
from careloop.engine.alerts import AlertService
from careloop.engine.analysis.gateway import AnalysisGateway
from careloop.engine.channels import DispatcherRegistry
from careloop.engine.chat_mode import ChatModeMachine
from careloop.engine.checkins import CheckInRecorder
from careloop.engine.commands import AutomationControl
from careloop.engine.crm import CrmNotifier
from careloop.engine.decider import ReplyHandoffDecider
from careloop.engine.dispatchers.twilio_dispatcher import TwilioSMSDispatcher
from careloop.engine.engagement import EngagementService
from careloop.engine.knowledge import KnowledgeBase
from careloop.engine.messages import MessageService
from careloop.engine.outbox import Outbox
from careloop.engine.pipeline import EnginePipeline
from careloop.engine.programs import ProgramService
from careloop.engine.queue import PatientQueueManager
from careloop.engine.reminders import ReminderService
from careloop.engine.schedule import ScheduleMatcher
from careloop.engine.scheduler import SweepScheduler
from careloop.engine.store import EngineStore
from careloop.engine.summary import ConversationSummarizer
from careloop.engine.tasks import TaskService
from careloop.engine.variants import PromptVariantSelector

logger = logging.getLogger("engine.setup")


@dataclass
class Engine:
    store: EngineStore
    dispatchers: DispatcherRegistry
    matcher: ScheduleMatcher
    recorder: CheckInRecorder
    tasks: TaskService
    knowledge: KnowledgeBase
    variants: PromptVariantSelector
    crm: CrmNotifier
    gateway: AnalysisGateway
    chat_mode: ChatModeMachine
    alerts: AlertService
    outbox: Outbox
    automation: AutomationControl
    decider: ReplyHandoffDecider
    summarizer: ConversationSummarizer
    messages: MessageService
    pipeline: EnginePipeline
    aggregator: MessageAggregator
    queue: PatientQueueManager
    programs: ProgramService
    reminders: ReminderService
    engagement: EngagementService
    scheduler: SweepScheduler


# Module-level singleton (set during initialize)
_engine: Engine | None = None


def build_engine(
    store: EngineStore | None = None,
    dispatchers: DispatcherRegistry | None = None,
    llm_client: Any = None,
    crm: CrmNotifier | None = None,
    message_buffer_seconds: float | None = None,
) -> Engine:
    """Construct every component without starting background tasks."""
    store = store or EngineStore()
    if dispatchers is None:
        dispatchers = DispatcherRegistry(
            max_attempts=settings.SEND_MAX_ATTEMPTS,
            backoff_base=settings.SEND_BACKOFF_BASE,
        )
        # Registered even without credentials so failed sends are still recorded
        dispatchers.register(TwilioSMSDispatcher())
    if crm is None:
        crm = CrmNotifier(
            settings.CRM_BASE_URL,
            settings.CRM_ACCESS_TOKEN,
            settings.CRM_STATUS_MAPPINGS,
        )

    matcher = ScheduleMatcher(store)
    recorder = CheckInRecorder(store, matcher)
    tasks = TaskService(store)
    knowledge = KnowledgeBase(store)
    variants = PromptVariantSelector(store)
    gateway = AnalysisGateway(
        store, recorder, tasks, matcher,
        knowledge=knowledge, variants=variants, llm_client=llm_client,
    )
    chat_mode = ChatModeMachine()
    alerts = AlertService(store, tasks, chat_mode=chat_mode, crm=crm)
    outbox = Outbox(store, dispatchers, default_channel=settings.DEFAULT_CHANNEL)
    automation = AutomationControl(store)
    decider = ReplyHandoffDecider(store, alerts, outbox, recorder, variants=variants)
    summarizer = ConversationSummarizer(store, gateway)
    messages = MessageService(store, recorder, outbox, automation, config=gateway.config)
    pipeline = EnginePipeline(
        messages=messages, gateway=gateway, decider=decider, summarizer=summarizer,
    )

    if message_buffer_seconds is None:
        delay: Any = lambda: gateway.config().message_buffer_seconds
    else:
        delay = message_buffer_seconds
    aggregator = MessageAggregator(on_flush=pipeline.enqueue_analysis, delay=delay)
    messages.attach_aggregator(aggregator)

    queue = PatientQueueManager(processor=pipeline.process_event)
    pipeline.attach_queue(queue)

    programs = ProgramService(store, matcher, crm=crm)
    reminders = ReminderService(store, matcher, outbox, tasks, crm=crm)
    engagement = EngagementService(store)
    scheduler = SweepScheduler(store, reminders, tasks, programs, engagement)

    return Engine(
        store=store,
        dispatchers=dispatchers,
        matcher=matcher,
        recorder=recorder,
        tasks=tasks,
        knowledge=knowledge,
        variants=variants,
        crm=crm,
        gateway=gateway,
        chat_mode=chat_mode,
        alerts=alerts,
        outbox=outbox,
        automation=automation,
        decider=decider,
        summarizer=summarizer,
        messages=messages,
        pipeline=pipeline,
        aggregator=aggregator,
        queue=queue,
        programs=programs,
        reminders=reminders,
        engagement=engagement,
        scheduler=scheduler,
    )


async def initialize_engine(
    engine: Engine | None = None,
    start_scheduler: bool = True,
) -> Engine:
    """
    Wire the engine (unless one is passed in), load seed data and start
    background tasks.  Returns the running Engine.
    """
    global _engine

    logger.info("Initializing CareLoop engine...")
    engine = engine or build_engine()

    if settings.SEED_FILE:
        try:
            counts = engine.store.load_seed_file(settings.SEED_FILE)
            logger.info("Seed data loaded from %s: %s", settings.SEED_FILE, counts)
        except Exception as exc:
            logger.error("Failed to load seed file %s: %s", settings.SEED_FILE, exc)

    await engine.queue.start()
    if start_scheduler:
        await engine.scheduler.start()

    _engine = engine
    logger.info(
        "Engine initialized: channels=%s, provider=%s, crm=%s",
        engine.dispatchers.registered_channels,
        "configured" if engine.gateway.client is not None else "missing",
        "configured" if engine.crm.configured else "off",
    )
    return engine


async def shutdown_engine() -> None:
    """Gracefully stop background tasks."""
    global _engine
    if _engine is None:
        return
    await _engine.aggregator.stop()
    await _engine.scheduler.stop()
    await _engine.queue.stop()
    await _engine.crm.drain()
    _engine = None
    logger.info("Engine shutdown complete")


def get_engine() -> Engine | None:
    return _engine


def get_store() -> EngineStore | None:
    return _engine.store if _engine else None


def get_pipeline() -> EnginePipeline | None:
    return _engine.pipeline if _engine else None


def get_queue_manager() -> PatientQueueManager | None:
    return _engine.queue if _engine else None


def get_scheduler() -> SweepScheduler | None:
    return _engine.scheduler if _engine else None
