"""Collaborator wiring for the ingestion and reply pipeline.

create_app() stores one Pipeline on app.state.pipeline; routes pull
their collaborators from there so tests can swap any of them.
"""

from __future__ import annotations

from dataclasses import dataclass

from zapflow.domain.assistant import AssistantInvoker
from zapflow.domain.batches import BatchProcessor
from zapflow.domain.dispatcher import OutboundDispatcher
from zapflow.infra.db import TxnFactory, txn
from zapflow.infra.settings import Settings
from zapflow.services.speech import SpeechClient
from zapflow.tasks.client import TasksClient
from zapflow.whatsapp.gateway import GatewayClient


@dataclass
class Pipeline:
    settings: Settings
    txn: TxnFactory
    tasks_client: TasksClient
    gateway: GatewayClient
    speech: SpeechClient
    invoker: AssistantInvoker
    dispatcher: OutboundDispatcher
    batches: BatchProcessor


def build_pipeline(
    settings: Settings | None = None,
    *,
    txn_factory: TxnFactory = txn,
    tasks_client: TasksClient | None = None,
) -> Pipeline:
    """Build the default pipeline. Nothing here opens a connection."""
    settings = settings or Settings.from_env()
    tasks_client = tasks_client or TasksClient()
    gateway = GatewayClient(
        settings.gateway_base_url,
        settings.gateway_api_key,
        recipient_suffix=settings.recipient_suffix,
        timeout=settings.gateway_timeout_seconds,
    )
    speech = SpeechClient(settings.speech_base_url, timeout=settings.speech_timeout_seconds)
    invoker = AssistantInvoker(settings, txn=txn_factory, speech=speech)
    dispatcher = OutboundDispatcher(gateway, settings, txn=txn_factory)
    batches = BatchProcessor(
        settings,
        invoker=invoker,
        dispatcher=dispatcher,
        tasks_client=tasks_client,
        txn=txn_factory,
    )
    return Pipeline(
        settings=settings,
        txn=txn_factory,
        tasks_client=tasks_client,
        gateway=gateway,
        speech=speech,
        invoker=invoker,
        dispatcher=dispatcher,
        batches=batches,
    )
