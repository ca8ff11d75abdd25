from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wacore.adapters.blob_store import LocalBlobStore
from wacore.adapters.fanout import FanoutChannel
from wacore.adapters.gateway_client import gateway_connection_factory
from wacore.adapters.provider import ConnectionFactory
from wacore.db.base import get_session_maker
from wacore.services.conversations import ConversationReadModels
from wacore.services.credit_ledger import CreditLedger
from wacore.services.inbound_handler import InboundHandler
from wacore.services.message_store import MessageStore
from wacore.services.reconciler import Reconciler
from wacore.services.send_pipeline import SendPipeline
from wacore.services.session_registry import SessionRegistry
from wacore.utils.config import Settings, get_settings


@dataclass
class MessagingCore:
    settings: Settings
    session_maker: async_sessionmaker[AsyncSession]
    fanout: FanoutChannel
    blob_store: LocalBlobStore
    registry: SessionRegistry
    ledger: CreditLedger
    store: MessageStore
    reconciler: Reconciler
    inbound: InboundHandler
    pipeline: SendPipeline
    read_models: ConversationReadModels


def build_core(
    *,
    settings: Settings | None = None,
    session_maker: async_sessionmaker[AsyncSession] | None = None,
    connection_factory: ConnectionFactory | None = None,
    fanout: FanoutChannel | None = None,
    blob_store: LocalBlobStore | None = None,
) -> MessagingCore:
    """Wire every component around a single SessionRegistry."""
    s = settings or get_settings()
    maker = session_maker or get_session_maker()
    fan = fanout or FanoutChannel()
    blobs = blob_store or LocalBlobStore(s.storage_root, s.storage_base_url)

    registry = SessionRegistry(maker, connection_factory or gateway_connection_factory(s), fan, s)
    ledger = CreditLedger(maker)
    store = MessageStore(maker, blobs, s)
    reconciler = Reconciler(maker, registry, store, s)
    inbound = InboundHandler(registry, store, fan, s)
    registry.bind(inbound=inbound, reconciler=reconciler, store=store)
    pipeline = SendPipeline(maker, registry, reconciler, store, ledger, fan, s)
    read_models = ConversationReadModels(maker, store, reconciler, s)

    return MessagingCore(
        settings=s,
        session_maker=maker,
        fanout=fan,
        blob_store=blobs,
        registry=registry,
        ledger=ledger,
        store=store,
        reconciler=reconciler,
        inbound=inbound,
        pipeline=pipeline,
        read_models=read_models,
    )
