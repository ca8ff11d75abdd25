from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wacore.adapters.fanout import FanoutChannel
from wacore.adapters.metrics import Metrics
from wacore.adapters.provider import ProviderConnection, ProviderError, SentMessage
from wacore.db.models import Template
from wacore.repositories.templates import TemplateRepository
from wacore.services.audit import record_audit
from wacore.services.credit_ledger import CreditLedger
from wacore.services.errors import ClientNotFound, InsufficientCredits
from wacore.services.message_store import MessageStore, message_event
from wacore.services.reconciler import Reconciler
from wacore.services.results import NOT_FOUND, PRECONDITION, OperationResult
from wacore.services.session_registry import SessionRegistry
from wacore.utils.config import Settings, get_settings
from wacore.utils.phone import format_whatsapp_id
from wacore.utils.retry import retry_async
from wacore.utils.templates import render_template, validate_variables


logger = structlog.get_logger(__name__)


def _failure_message(exc: BaseException) -> str:
    if isinstance(exc, ProviderError):
        return exc.user_message
    return f"Send failed: {exc}"


def _delivered_any(result: OperationResult) -> bool:
    """True when a single or bulk send got at least one message out."""
    if not result.success:
        return False
    if isinstance(result.data, dict) and "summary" in result.data:
        return result.data["summary"]["successful"] > 0
    return True


def _template_info(template: Template) -> dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "business_type": template.business_type,
        "category": template.category,
    }


class SendPipeline:
    """Credit-gated outbound path.

    health check -> best-effort reconcile -> balance check -> provider send with
    bounded retry -> conditional debit -> persist -> retention trim -> fan-out.
    The debit is a single ``credits >= n`` conditional UPDATE, so a balance that
    changed during a slow send can never be overdrawn.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        registry: SessionRegistry,
        reconciler: Reconciler,
        store: MessageStore,
        ledger: CreditLedger,
        fanout: FanoutChannel,
        settings: Settings | None = None,
    ):
        self.session_maker = session_maker
        self.registry = registry
        self.reconciler = reconciler
        self.store = store
        self.ledger = ledger
        self.fanout = fanout
        self.settings = settings or get_settings()

    async def _ready_connection(self, client_id: str) -> tuple[Optional[ProviderConnection], Optional[OperationResult]]:
        health = await self.registry.health_check(client_id)
        if not health.success:
            return None, health
        await self.reconciler.auto_sync(client_id)
        conn = self.registry.get(client_id)
        if conn is None:
            return None, OperationResult.fail("WhatsApp not connected", reason=PRECONDITION)
        if not conn.is_ready:
            return None, OperationResult.fail(
                "WhatsApp client not ready. Please reconnect.", reason=PRECONDITION
            )
        return conn, None

    async def _check_credits(self, client_id: str, required: int) -> Optional[OperationResult]:
        balance = await self.ledger.current(client_id)
        if balance is None:
            return OperationResult.fail("Client not found", reason=NOT_FOUND)
        if balance < required:
            return OperationResult.fail(
                InsufficientCredits(required=required, available=balance).message, reason=PRECONDITION
            )
        return None

    async def _send_with_retry(
        self, conn: ProviderConnection, client_id: str, chat_id: str, body: str
    ) -> tuple[SentMessage, int]:
        retries = 0

        def _on_retry(attempt: int, delay_s: float, exc: BaseException) -> None:
            nonlocal retries
            retries = attempt
            logger.warning(
                "send_retry",
                client_id=client_id,
                to=chat_id,
                attempt=attempt,
                delay_s=delay_s,
                error=str(exc),
            )

        sent = await retry_async(
            conn.send_message,
            chat_id,
            body,
            attempts=self.settings.send_max_attempts,
            backoff_s=self.settings.send_backoff_s,
            is_retryable=lambda e: isinstance(e, ProviderError) and e.retryable,
            on_retry=_on_retry,
        )
        return sent, retries

    async def _debit(self, client_id: str, amount: int, description: str) -> tuple[int, Optional[int]]:
        """Debit after confirmed sends. Returns (credits_used, remaining)."""
        try:
            remaining = await self.ledger.decrement(client_id, amount, description)
            return amount, remaining
        except InsufficientCredits as exc:
            # Balance moved between the pre-check and the debit; messages already left
            logger.warning(
                "credit_debit_race", client_id=client_id, required=exc.required, available=exc.available
            )
            await record_audit(
                self.session_maker,
                client_id,
                "credit_debit_skipped",
                {"required": exc.required, "available": exc.available, "description": description},
            )
            return 0, exc.available
        except (ClientNotFound, SQLAlchemyError):
            logger.exception("credit_debit_failed", client_id=client_id, amount=amount)
            return 0, None

    async def _record_sent(
        self,
        client_id: str,
        sent: SentMessage,
        *,
        me: Optional[str],
        chat_id: str,
        body: str,
    ) -> Optional[int]:
        try:
            row = await self.store.persist_outbound(
                client_id, sent, from_address=me, to_address=chat_id, body=body
            )
        except SQLAlchemyError:
            logger.exception("outbound_persist_failed", client_id=client_id, provider_message_id=sent.id)
            return None
        await self.fanout.publish(client_id, message_event("message_sent", row))
        return row.id

    async def send_one(self, client_id: str, address: str, body: str) -> OperationResult:
        conn, failure = await self._ready_connection(client_id)
        if failure is not None:
            return failure
        assert conn is not None

        try:
            failure = await self._check_credits(client_id, 1)
        except SQLAlchemyError as exc:
            logger.exception("credit_check_failed", client_id=client_id)
            return OperationResult.fail(str(exc))
        if failure is not None:
            return failure

        chat_id = format_whatsapp_id(address)
        if chat_id is None:
            return OperationResult.fail("Invalid phone number format", reason=PRECONDITION)

        try:
            sent, retries = await self._send_with_retry(conn, client_id, chat_id, body)
        except Exception as exc:
            logger.warning("send_failed", client_id=client_id, to=chat_id, error=str(exc))
            Metrics.inc("whatsapp_message_failed")
            await record_audit(
                self.session_maker,
                client_id,
                "message_error",
                {"phone_number": address, "error": str(exc), "timestamp": datetime.utcnow().isoformat()},
            )
            return OperationResult.fail(_failure_message(exc))

        credits_used, remaining = await self._debit(
            client_id, 1, f"Credit deducted for sending message to {chat_id}"
        )
        me = await self.registry.me_number(client_id)
        saved_id = await self._record_sent(client_id, sent, me=me, chat_id=chat_id, body=body)
        await self.store.trim_retention(client_id)

        Metrics.inc("whatsapp_message_sent")
        await record_audit(
            self.session_maker,
            client_id,
            "message_sent",
            {
                "phone_number": chat_id,
                "original_number": address,
                "message": body,
                "retry_count": retries,
                "credits_used": credits_used,
                "remaining_credits": remaining,
            },
        )
        logger.info("message_sent", client_id=client_id, to=chat_id, provider_message_id=sent.id)
        return OperationResult.ok(
            {
                "id": sent.id,
                "to": chat_id,
                "from": me,
                "body": body,
                "timestamp": sent.timestamp,
                "type": sent.type,
                "direction": "OUTBOUND",
                "retry_count": retries,
                "credits_used": credits_used,
                "remaining_credits": remaining,
                "saved_message_id": saved_id,
            }
        )

    async def send_bulk(self, client_id: str, addresses: Sequence[str], body: str) -> OperationResult:
        """Send sequentially; one recipient's failure never aborts the batch.

        Affordability of the whole batch is checked before any provider call and
        the successful count is debited as a single ledger entry at the end.
        """
        if not addresses:
            return OperationResult.fail("At least one phone number is required", reason=PRECONDITION)

        conn, failure = await self._ready_connection(client_id)
        if failure is not None:
            return failure
        assert conn is not None

        try:
            failure = await self._check_credits(client_id, len(addresses))
        except SQLAlchemyError as exc:
            logger.exception("credit_check_failed", client_id=client_id)
            return OperationResult.fail(str(exc))
        if failure is not None:
            return failure

        me = await self.registry.me_number(client_id)
        results: list[dict[str, Any]] = []
        successful = 0

        for idx, address in enumerate(addresses):
            if idx > 0:
                await asyncio.sleep(self.settings.bulk_send_delay_s)
            chat_id = format_whatsapp_id(address)
            if chat_id is None:
                results.append(
                    {"phone_number": address, "success": False, "message": "Invalid phone number format"}
                )
                continue
            try:
                sent, retries = await self._send_with_retry(conn, client_id, chat_id, body)
            except Exception as exc:
                logger.warning("bulk_send_failed", client_id=client_id, to=chat_id, error=str(exc))
                Metrics.inc("whatsapp_message_failed")
                await record_audit(
                    self.session_maker,
                    client_id,
                    "bulk_message_error",
                    {"phone_number": address, "error": str(exc), "timestamp": datetime.utcnow().isoformat()},
                )
                results.append({"phone_number": address, "success": False, "message": _failure_message(exc)})
                continue

            successful += 1
            saved_id = await self._record_sent(client_id, sent, me=me, chat_id=chat_id, body=body)
            Metrics.inc("whatsapp_message_sent")
            await record_audit(
                self.session_maker,
                client_id,
                "message_sent",
                {"phone_number": chat_id, "original_number": address, "message": body, "retry_count": retries},
            )
            results.append(
                {
                    "phone_number": address,
                    "success": True,
                    "data": {
                        "id": sent.id,
                        "to": chat_id,
                        "from": me,
                        "body": body,
                        "timestamp": sent.timestamp,
                        "type": sent.type,
                        "direction": "OUTBOUND",
                        "retry_count": retries,
                        "saved_message_id": saved_id,
                    },
                }
            )

        await self.store.trim_retention(client_id)

        credits_used = 0
        remaining: Optional[int] = None
        if successful:
            credits_used, remaining = await self._debit(
                client_id,
                successful,
                f"Credits deducted for sending {successful} messages in bulk operation",
            )
            for item in results:
                if item["success"]:
                    item["data"]["credits_used"] = 1 if credits_used else 0
                    item["data"]["remaining_credits"] = remaining
        if remaining is None:
            remaining = await self.ledger.current(client_id)

        total = len(addresses)
        summary = {
            "total": total,
            "successful": successful,
            "failed": total - successful,
            "success_rate": successful / total * 100,
            "credits_used": credits_used,
            "credits_remaining": remaining,
        }
        logger.info("bulk_send_completed", client_id=client_id, **summary)
        return OperationResult.ok({"results": results, "summary": summary})

    async def _load_template(self, client_id: str, template_id: str) -> Optional[Template]:
        async with self.session_maker() as session:
            return await TemplateRepository(session).get_for_client(template_id, client_id)

    async def send_template(
        self,
        client_id: str,
        addresses: Sequence[str],
        template_id: str,
        variables: Mapping[str, Any] | None = None,
    ) -> OperationResult:
        variables = dict(variables or {})
        try:
            template = await self._load_template(client_id, template_id)
        except SQLAlchemyError as exc:
            logger.exception("template_load_failed", client_id=client_id, template_id=template_id)
            return OperationResult.fail(str(exc))
        if template is None:
            return OperationResult.fail("Template not found", reason=NOT_FOUND)

        validation = validate_variables(template.content, variables)
        if not validation.is_valid:
            return OperationResult.fail(
                f"Missing required variables: {', '.join(validation.missing_variables)}",
                reason=PRECONDITION,
            )
        rendered = render_template(template.content, variables)

        logger.info("template_send", client_id=client_id, template_id=template.id, recipients=len(addresses))

        if len(addresses) == 1:
            result = await self.send_one(client_id, addresses[0], rendered)
        else:
            result = await self.send_bulk(client_id, addresses, rendered)
        if _delivered_any(result):
            await record_audit(
                self.session_maker,
                client_id,
                "template_message_sent",
                {
                    "template_id": template.id,
                    "template_name": template.name,
                    "phone_numbers": list(addresses),
                    "variables": variables,
                    "processed_message": rendered[:500],
                    "recipient_count": len(addresses),
                },
            )
        if result.success and isinstance(result.data, dict):
            result.data.update(
                {
                    "template": _template_info(template),
                    "variables": variables,
                    "original_content": template.content,
                    "processed_content": rendered,
                }
            )
        return result

    async def preview_template(
        self, client_id: str, template_id: str, variables: Mapping[str, Any] | None = None
    ) -> OperationResult:
        variables = dict(variables or {})
        try:
            template = await self._load_template(client_id, template_id)
        except SQLAlchemyError as exc:
            return OperationResult.fail(str(exc))
        if template is None:
            return OperationResult.fail("Template not found", reason=NOT_FOUND)
        validation = validate_variables(template.content, variables)
        return OperationResult.ok(
            {
                "original_content": template.content,
                "processed_content": render_template(template.content, variables),
                "variables": variables,
                "validation": {
                    "is_valid": validation.is_valid,
                    "missing_variables": list(validation.missing_variables),
                },
                "template": _template_info(template),
            }
        )
