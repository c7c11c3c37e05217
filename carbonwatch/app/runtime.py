"""Explicit wiring of the ingestion pipeline.

Every stage receives its collaborators here; nothing reaches for a global
event bus. The HTTP app keeps one PipelineRuntime on `app.state.runtime`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

from .config import Settings
from .db import SessionFactory, db_session
from .errors import TransportConnectionError
from .observability import PipelineCounters, pipeline_counters
from .services.alert_lifecycle import AlertLifecycleManager
from .services.conditions import CompiledRuleCache
from .services.device_queues import DeviceQueuePool
from .services.gateway import IngestionGateway
from .services.notifications import ChannelAdapter, NotificationDispatcher, adapters_from_settings
from .services.persistence import TelemetryWriter
from .services.pipeline import TelemetryPipeline
from .services.registry import (
    AuthorizationDirectory,
    DeviceRegistry,
    SqlAuthorizationDirectory,
    SqlDeviceRegistry,
)
from .services.retry import notification_policy, persistence_policy
from .services.rule_evaluator import RuleEvaluator
from .services.transport import MqttTransport


logger = logging.getLogger("carbonwatch.runtime")


@dataclass
class PipelineRuntime:
    session_factory: SessionFactory
    counters: PipelineCounters
    lifecycle: AlertLifecycleManager
    evaluator: RuleEvaluator
    dispatcher: NotificationDispatcher
    pipeline: TelemetryPipeline
    pool: DeviceQueuePool
    gateway: IngestionGateway
    transport: MqttTransport | None = None


def build_runtime(
    settings: Settings,
    *,
    session_factory: SessionFactory = db_session,
    counters: PipelineCounters = pipeline_counters,
    registry: DeviceRegistry | None = None,
    authorization: AuthorizationDirectory | None = None,
    adapters: Mapping[str, ChannelAdapter] | None = None,
) -> PipelineRuntime:
    registry = registry or SqlDeviceRegistry(session_factory)
    authorization = authorization or SqlAuthorizationDirectory(
        session_factory, always_authorized=settings.authz_admin_emails
    )

    dispatcher = NotificationDispatcher(
        session_factory,
        authorization=authorization,
        adapters=adapters if adapters is not None else adapters_from_settings(settings),
        policy=notification_policy(settings),
        max_workers=settings.notify_max_workers,
        counters=counters,
    )
    lifecycle = AlertLifecycleManager(session_factory, event_sink=dispatcher.submit, counters=counters)
    evaluator = RuleEvaluator(
        session_factory,
        cache=CompiledRuleCache(),
        hysteresis_clear_count=settings.alert_hysteresis_clear_count,
        max_consecutive_failures=settings.rule_max_consecutive_failures,
        event_sink=dispatcher.submit,
        counters=counters,
    )
    writer = TelemetryWriter(session_factory, policy=persistence_policy(settings), counters=counters)
    pipeline = TelemetryPipeline(
        registry=registry,
        writer=writer,
        evaluator=evaluator,
        lifecycle=lifecycle,
        counters=counters,
    )
    pool = DeviceQueuePool(
        pipeline.process,
        max_workers=settings.pipeline_max_workers,
        capacity=settings.device_queue_capacity,
        idle_timeout_s=settings.device_idle_timeout_s,
        counters=counters,
    )
    gateway = IngestionGateway(pool.submit, counters=counters)

    return PipelineRuntime(
        session_factory=session_factory,
        counters=counters,
        lifecycle=lifecycle,
        evaluator=evaluator,
        dispatcher=dispatcher,
        pipeline=pipeline,
        pool=pool,
        gateway=gateway,
    )


async def start_runtime(runtime: PipelineRuntime, settings: Settings) -> None:
    await runtime.pool.start()

    if not settings.mqtt_enabled:
        logger.info("MQTT transport disabled (MQTT_ENABLED=false); HTTP ingest only")
        return

    runtime.transport = MqttTransport.from_settings(runtime.gateway, settings)
    try:
        runtime.transport.start()
    except TransportConnectionError:
        # Degraded, not fatal: paho keeps reconnecting in the background.
        runtime.counters.incr("transport_connect_failures")
        logger.exception("mqtt_start_failed")


async def stop_runtime(runtime: PipelineRuntime) -> None:
    # Stop intake first, then let in-flight device queues finish.
    runtime.gateway.pause("shutdown")
    if runtime.transport is not None:
        runtime.transport.stop()
        runtime.transport = None
    await runtime.pool.close()
    runtime.dispatcher.shutdown(wait=True)
