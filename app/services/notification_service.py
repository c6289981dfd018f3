"""
Admin notifications.

Best-effort side channel: `notify_admin` schedules delivery as an asyncio
task and returns immediately. Delivery runs on a worker thread, failures are
logged and never reach the caller. Call it only after the surrounding
transaction has committed.
"""
import asyncio
import html
import logging
from typing import Any, Optional

from app.config import settings
from app.services.email_service import get_email_service

logger = logging.getLogger(__name__)

# Strong references so pending tasks are not garbage collected mid-flight
_pending: set[asyncio.Task] = set()


def _render_html(subject: str, body: str) -> str:
    lines = "".join(f"<p>{html.escape(line)}</p>" for line in body.splitlines() if line.strip())
    return f"<h2>{html.escape(subject)}</h2>{lines}<p>Please check the admin panel for details.</p>"


async def _deliver(subject: str, body: str) -> None:
    email_service = get_email_service()
    sent = await asyncio.to_thread(
        email_service.send_email,
        settings.ADMIN_EMAIL,
        subject,
        _render_html(subject, body),
        body,
    )
    if sent:
        logger.info(f"Admin notified: {subject}")


def _on_done(task: asyncio.Task) -> None:
    _pending.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Admin notification failed: {exc}")


def notify_admin(subject: str, body: str) -> Optional[asyncio.Task]:
    """Fire-and-forget email to the admin mailbox."""
    if not settings.NOTIFICATIONS_ENABLED:
        logger.info(f"Notifications disabled, skipping: {subject}")
        return None
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.warning(f"No running event loop, dropping notification: {subject}")
        return None

    task = loop.create_task(_deliver(subject, body))
    _pending.add(task)
    task.add_done_callback(_on_done)
    return task


async def drain_notifications() -> None:
    """Wait for in-flight notifications (used at shutdown and in tests)."""
    if _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)


# ==================== Templates ====================

def _format_amount(amount: Any) -> str:
    return f"₹{float(amount or 0):,.2f}"


def notify_payment_success(order, payment) -> None:
    notify_admin(
        f"Payment received for order {order.order_id}",
        "\n".join([
            f"Order: {order.order_id}",
            f"Payment: {payment.payment_id} ({payment.purpose})",
            f"Amount: {_format_amount(payment.amount)}",
            f"Transaction: {payment.transaction_id or 'N/A'}",
            f"Payment status: {order.payment_status}",
            f"Order status: {order.status}",
        ]),
    )


def notify_payment_failed(order_ref: str, payment_id: str, reason: Optional[str]) -> None:
    notify_admin(
        f"Payment failed for order {order_ref}",
        "\n".join([
            f"Order: {order_ref}",
            f"Payment: {payment_id}",
            f"Reason: {reason or 'N/A'}",
        ]),
    )


def notify_signature_mismatch(order_ref: str, payment_id: str, gateway_payment_id: str) -> None:
    notify_admin(
        f"Payment signature mismatch for order {order_ref}",
        "\n".join([
            f"Order: {order_ref}",
            f"Payment: {payment_id}",
            f"Gateway payment: {gateway_payment_id}",
            "The callback signature did not match. The payment was marked Failed.",
        ]),
    )


def notify_paid_after_cancellation(order, payment) -> None:
    notify_admin(
        f"Payment received for cancelled order {order.order_id}",
        "\n".join([
            f"Order: {order.order_id}",
            f"Payment: {payment.payment_id}",
            f"Amount: {_format_amount(payment.amount)}",
            "The order was cancelled before the payment completed. A refund may be due.",
        ]),
    )


def notify_reconciliation_needed(order, note: str) -> None:
    notify_admin(
        f"Order {order.order_id} needs reconciliation",
        "\n".join([f"Order: {order.order_id}", note]),
    )


def notify_order_cancelled(order) -> None:
    notify_admin(
        f"Order {order.order_id} cancelled",
        "\n".join([
            f"Order: {order.order_id}",
            f"Cancelled by: {order.cancelled_by}",
            f"Reason: {order.cancellation_reason}",
            f"Final total: {_format_amount(order.final_total)}",
            f"Amount paid: {_format_amount(order.amount_paid)}",
        ]),
    )


def notify_order_created(order) -> None:
    notify_admin(
        f"New order {order.order_id}",
        "\n".join([
            f"Order: {order.order_id}",
            f"Items: {len(order.items or [])}",
            f"Payment option: {order.payment_option}",
            f"Final total: {_format_amount(order.final_total)}",
            f"Status: {order.status}",
        ]),
    )
