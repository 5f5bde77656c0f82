"""Wires the workflow components together around one store and event bus."""
import logging
from typing import Optional

from pitchdesk.core.config import Settings, get_settings
from pitchdesk.core.events import EventBus
from pitchdesk.services.contracts import ContractLifecycleManager
from pitchdesk.services.dispatcher import MessageDispatcher
from pitchdesk.services.interest_ledger import InterestLedger
from pitchdesk.services.orchestrator import NegotiationOrchestrator
from pitchdesk.services.pitch_store import PitchStore
from pitchdesk.services.profiles import ProfileDirectory
from pitchdesk.services.sinks import NotificationSink, StoreNotificationSink
from pitchdesk.services.store import MemoryStore, WorkflowStore

logger = logging.getLogger(__name__)


class Workflow:
    def __init__(
        self,
        store: WorkflowStore,
        settings: Optional[Settings] = None,
        sinks: Optional[list[NotificationSink]] = None,
    ):
        settings = settings or get_settings()
        self.settings = settings
        self.store = store
        self.bus = EventBus()

        if sinks is None:
            sinks = [StoreNotificationSink(store)]
            if settings.sendgrid_api_key:
                from pitchdesk.services.email_alerts import EmailNotificationSink
                sinks.append(EmailNotificationSink(store, settings))

        self.profiles = ProfileDirectory(store, auto_provision=settings.auto_provision_profiles)
        self.pitches = PitchStore(store, self.profiles)
        self.dispatcher = MessageDispatcher(store, self.pitches, self.profiles, sinks)
        self.orchestrator = NegotiationOrchestrator(store, self.pitches)
        self.ledger = InterestLedger(store, self.pitches, self.profiles, self.bus)
        self.contracts = ContractLifecycleManager(
            store,
            self.pitches,
            self.profiles,
            self.ledger,
            self.dispatcher,
            self.bus,
            service_charge_rate=settings.service_charge_rate,
        )

        # Stage bookkeeping runs before outbound messages
        self.orchestrator.register(self.bus)
        self.dispatcher.register(self.bus)


_workflow: Optional[Workflow] = None


def init_workflow(store: WorkflowStore) -> Workflow:
    global _workflow
    _workflow = Workflow(store)
    logger.info(f"Workflow initialised on {type(store).__name__}")
    return _workflow


def get_workflow() -> Workflow:
    """FastAPI dependency. Falls back to in-memory mode if the app lifespan did not run."""
    global _workflow
    if _workflow is None:
        _workflow = Workflow(MemoryStore())
    return _workflow
