"""Wires the services together and registers the periodic jobs."""
from dataclasses import dataclass, field
from typing import List, Optional

import structlog
from sqlalchemy.orm import sessionmaker

from usage_orders.clock import DEFAULT_CLOCK, Clock
from usage_orders.config import Settings
from usage_orders.services.actions import WorkflowActions
from usage_orders.services.exception_classifier import ExceptionClassifier
from usage_orders.services.features import FeatureProvider, default_feature_provider
from usage_orders.services.gateways import (
    DeviceGateway,
    FanOutNotificationGateway,
    LedgerGateway,
    LoggingDeviceGateway,
    LoggingLedgerGateway,
    LoggingNotificationChannel,
    NotificationGateway,
)
from usage_orders.services.refunds import RefundService
from usage_orders.services.remediation import ExceptionRemediator
from usage_orders.services.reviews import ReviewService
from usage_orders.services.scheduler import ScheduledCall, Scheduler, ThreadingScheduler
from usage_orders.services.settlement import SettlementService
from usage_orders.services.timeout_detector import TimeoutDetector
from usage_orders.services.workflow_engine import WorkflowEngine

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    session_factory: sessionmaker
    clock: Clock
    scheduler: Scheduler
    notifications: NotificationGateway
    devices: DeviceGateway
    ledger: LedgerGateway
    refunds: RefundService
    reviews: ReviewService
    workflows: WorkflowEngine
    classifier: ExceptionClassifier
    remediator: ExceptionRemediator
    timeouts: TimeoutDetector
    settlement: SettlementService
    jobs: List[ScheduledCall] = field(default_factory=list)

    def shutdown(self) -> None:
        for job in self.jobs:
            job.cancel()
        self.jobs.clear()
        self.workflows.shutdown()
        self.scheduler.shutdown()


def build_services(
    settings: Settings,
    session_factory: sessionmaker,
    clock: Clock = DEFAULT_CLOCK,
    scheduler: Optional[Scheduler] = None,
    notifications: Optional[NotificationGateway] = None,
    devices: Optional[DeviceGateway] = None,
    ledger: Optional[LedgerGateway] = None,
    features: Optional[FeatureProvider] = None,
) -> Services:
    """Build the service graph. Gateways default to the logging implementations."""
    scheduler = scheduler or ThreadingScheduler()
    notifications = notifications or FanOutNotificationGateway([LoggingNotificationChannel("log")])
    devices = devices or LoggingDeviceGateway()
    ledger = ledger or LoggingLedgerGateway()

    refunds = RefundService(ledger, clock)
    reviews = ReviewService(clock)
    actions = WorkflowActions(session_factory, devices, refunds, reviews, clock)
    workflows = WorkflowEngine(
        session_factory, actions, notifications, scheduler,
        reviews=reviews, clock=clock, retry_backoff_seconds=settings.step_retry_backoff_seconds,
    )
    classifier = ExceptionClassifier(
        session_factory, notifications, scheduler, features or default_feature_provider(clock),
        clock=clock, workflows=workflows,
    )
    return Services(
        settings=settings,
        session_factory=session_factory,
        clock=clock,
        scheduler=scheduler,
        notifications=notifications,
        devices=devices,
        ledger=ledger,
        refunds=refunds,
        reviews=reviews,
        workflows=workflows,
        classifier=classifier,
        remediator=ExceptionRemediator(session_factory, workflows, notifications, settings, clock),
        timeouts=TimeoutDetector(session_factory, notifications, devices, refunds, settings, clock),
        settlement=SettlementService(session_factory, clock),
    )


def start_jobs(services: Services) -> List[ScheduledCall]:
    settings = services.settings
    scheduler = services.scheduler
    services.jobs.extend([
        scheduler.every(settings.scan_interval_seconds, services.timeouts.run_all, "timeout_scan"),
        scheduler.every(settings.scan_interval_seconds, services.classifier.scan_active_orders, "exception_scan"),
        scheduler.every(settings.prune_interval_seconds, services.remediator.prune, "exception_prune"),
    ])
    logger.info("periodic_jobs_started", jobs=[job.name for job in services.jobs],
                scan_interval_seconds=settings.scan_interval_seconds)
    return services.jobs
