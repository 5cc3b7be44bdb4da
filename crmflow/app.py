"""
CrmFlow Application - single entry point for the outreach automation core.

Usage:
    from crmflow import CrmFlow

    app = CrmFlow.from_file("config.yaml")

    # Cron tick
    result = await app.process_due_work()

    # From a CRM mutation path
    await app.emit_automation_event(TriggerEvent(...))

Tests and local runs can inject the in-memory stores and collaborators
instead of a database:

    app = CrmFlow(
        CrmFlowConfig(),
        sequence_store=MemorySequenceStore(),
        automation_store=MemoryAutomationStore(),
        gateway=MemoryCrmGateway(),
        mail_sender=MemoryMailSender(),
    )
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple

from .config import CrmFlowConfig
from .errors import ConfigError
from .models import DryRunResult, SequenceEnrollment, TriggerEvent, utcnow
from .protocols import CrmGateway, MailSender, WebhookSender
from .storage.base import AutomationStore, SequenceStore

logger = logging.getLogger(__name__)


class CrmFlow:
    """
    CrmFlow Application entry point.

    Sync constructor only holds configuration; stores, collaborators and
    the processors are wired on first use.

    Args:
        config: validated CrmFlowConfig
        sequence_store / automation_store / gateway: override the Postgres
            implementations (no database is opened when all three are given)
        mail_sender / webhook_sender: override the HTTP collaborators
        clock: callable returning the current aware datetime
    """

    def __init__(
        self,
        config: CrmFlowConfig,
        sequence_store: Optional[SequenceStore] = None,
        automation_store: Optional[AutomationStore] = None,
        gateway: Optional[CrmGateway] = None,
        mail_sender: Optional[MailSender] = None,
        webhook_sender: Optional[WebhookSender] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._config = config
        self._clock = clock
        self._initialized = False

        self._sequence_store = sequence_store
        self._automation_store = automation_store
        self._gateway = gateway
        self._mail_sender = mail_sender
        self._webhook_sender = webhook_sender

        # Will be set during lazy initialization
        self._database = None
        self._event_bus = None
        self._engine = None
        self._sequence_processor = None
        self._time_triggers = None
        self._dry_run = None

    @classmethod
    def from_file(cls, path: str, **overrides: Any) -> "CrmFlow":
        return cls(CrmFlowConfig.from_file(path), **overrides)

    async def _ensure_initialized(self) -> None:
        """Lazy initialization - runs once on first use."""
        if self._initialized:
            return

        cfg = self._config

        # 1. Stores and CRM gateway
        if self._sequence_store is None or self._automation_store is None or self._gateway is None:
            if not cfg.database:
                raise ConfigError("Missing required config field: 'database'")
            from .db import Database, ensure_schema
            from .providers.crm import PostgresCrmGateway
            from .storage.postgres import PostgresAutomationStore, PostgresSequenceStore

            self._database = Database(dsn=cfg.database)
            await self._database.initialize()
            await ensure_schema(self._database)
            self._sequence_store = self._sequence_store or PostgresSequenceStore(self._database)
            self._automation_store = self._automation_store or PostgresAutomationStore(self._database)
            self._gateway = self._gateway or PostgresCrmGateway(self._database)

        # 2. Outbound collaborators
        if self._mail_sender is None and cfg.mail.relay_url:
            from .providers.relay import HttpMailSender
            self._mail_sender = HttpMailSender(cfg.mail.relay_url, api_key=cfg.mail.api_key, timeout=cfg.mail.timeout)
        if self._mail_sender is None:
            logger.warning("No mail relay configured; email steps and send_email actions will fail")
        if self._webhook_sender is None:
            from .providers.webhook import HttpWebhookSender
            self._webhook_sender = HttpWebhookSender(timeout=cfg.webhook_timeout)

        # 3. EventBus
        from .triggers.event_bus import EventBus, InProcessTransport, OutboxTransport
        if cfg.event_transport == "outbox":
            transport = OutboxTransport(self._automation_store)
        else:
            transport = InProcessTransport()
        self._event_bus = EventBus(transport)
        logger.info(f"EventBus transport: {transport.name}")

        # 4. Sequence processor
        from .sequences import SequenceProcessor
        self._sequence_processor = SequenceProcessor(
            self._sequence_store,
            self._gateway,
            self._mail_sender,
            bus=self._event_bus,
            settings=cfg.sequences,
            locking=cfg.locking,
            clock=self._clock,
        )

        # 5. Automation engine, time triggers and dry runs
        from .triggers.actions import ActionDispatcher
        from .triggers.dry_run import DryRunHarness
        from .triggers.engine import AutomationEngine
        from .triggers.time_triggers import TimeTriggerProcessor

        dispatcher = ActionDispatcher(
            self._gateway,
            mail_sender=self._mail_sender,
            webhook_sender=self._webhook_sender,
            enroller=self._sequence_processor,
            emit=self._event_bus.emit,
        )
        self._engine = AutomationEngine(
            self._automation_store,
            dispatcher,
            self._gateway,
            max_chain_depth=cfg.automations.max_chain_depth,
            clock=self._clock,
        )
        self._event_bus.subscribe("*", self._engine.handle_event)
        self._time_triggers = TimeTriggerProcessor(
            self._engine,
            self._automation_store,
            self._gateway,
            candidate_limit=cfg.automations.candidate_limit,
            max_window_attempts=cfg.automations.max_window_attempts,
            clock=self._clock,
        )
        self._dry_run = DryRunHarness(self._automation_store, self._gateway, dispatcher, clock=self._clock)

        self._initialized = True
        logger.info(f"CrmFlow initialized (locking={cfg.locking.mode})")

    @property
    def config(self) -> CrmFlowConfig:
        return self._config

    async def shutdown(self) -> None:
        """Close the database pool, if one was opened."""
        if not self._initialized:
            return
        try:
            if self._database:
                await self._database.close()
        except Exception as e:
            logger.warning(f"Error during shutdown: {e}")
        finally:
            self._initialized = False
            self._database = None
            self._event_bus = None
            self._engine = None
            self._sequence_processor = None
            self._time_triggers = None
            self._dry_run = None
            logger.info("CrmFlow shut down")

    # ── Batch drivers ──

    async def process_due_work(self) -> Dict[str, Any]:
        """One cron tick: sequences, then time triggers, then the event outbox.

        Store failures propagate so the caller can answer 500.
        """
        await self._ensure_initialized()
        cfg = self._config

        sequences = await self._sequence_processor.process_sequences(cfg.sequences.batch_size)
        automations = await self._time_triggers.process(cfg.automations.time_trigger_batch_size)
        result: Dict[str, Any] = {
            "success": True,
            "sequences": sequences.to_dict(),
            "automations": automations.to_dict(),
        }
        if cfg.event_transport == "outbox":
            result["outbox"] = await self._event_bus.drain(limit=cfg.automations.time_trigger_batch_size)
        return result

    async def process_sequences(self, max_batch_size: Optional[int] = None):
        await self._ensure_initialized()
        return await self._sequence_processor.process_sequences(
            max_batch_size or self._config.sequences.batch_size
        )

    async def process_time_triggers(self, max_batch_size: Optional[int] = None):
        await self._ensure_initialized()
        return await self._time_triggers.process(
            max_batch_size or self._config.automations.time_trigger_batch_size
        )

    async def drain_outbox(self, limit: int = 100) -> Dict[str, int]:
        await self._ensure_initialized()
        return await self._event_bus.drain(limit)

    # ── Events ──

    async def emit_automation_event(self, event: TriggerEvent) -> None:
        """Fire-and-forget: failures are logged, never raised."""
        try:
            await self._ensure_initialized()
        except Exception:
            logger.exception(f"Cannot emit {event.trigger_type}: CrmFlow failed to initialize")
            return
        await self._event_bus.emit(event)

    # ── Projects, enrollments, dry runs ──

    async def resolve_project(self, slug: str) -> Optional[str]:
        await self._ensure_initialized()
        return await self._gateway.resolve_project(slug)

    async def enroll(
        self, project_id: str, sequence_id: str, person_id: str, sender_id: Optional[str] = None
    ) -> Tuple[SequenceEnrollment, bool]:
        await self._ensure_initialized()
        return await self._sequence_processor.enroll(project_id, sequence_id, person_id, sender_id=sender_id)

    async def stop_on_reply(self, project_id: str, person_id: str) -> int:
        await self._ensure_initialized()
        return await self._sequence_processor.stop_on_reply(project_id, person_id)

    async def dry_run_automation(
        self, project_id: str, automation_id: str, entity_type: str, entity_id: str
    ) -> DryRunResult:
        """Raises NotFoundError when the automation or entity is not in the project."""
        await self._ensure_initialized()
        return await self._dry_run.dry_run(project_id, automation_id, entity_type, entity_id)

    @property
    def event_bus(self):
        """Access the event bus (None before initialization)."""
        return self._event_bus

    @property
    def engine(self):
        return self._engine

    @property
    def sequence_processor(self):
        return self._sequence_processor
