"""
Notification Gateway Module

Administrators are told when a withdrawal is submitted. Delivery is
best-effort: it runs as a background task after the withdrawal has been
committed, and a failure is only logged.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Optional, Any, Set, Tuple

import httpx

from .ledger import LedgerEntry
from .logging_config import get_logger, log_action


def build_withdrawal_message(entry: LedgerEntry, account_email: str) -> Tuple[str, str]:
    """Subject and body of the withdrawal-submitted message"""
    destination = entry.crypto_address or entry.address or "n/a"
    subject = f"New withdrawal request: {entry.amount} {entry.currency}"
    lines = [
        f"Account: {account_email}",
        f"Type: {entry.entry_type.value}",
        f"Amount: {entry.amount} {entry.currency}",
        f"Destination: {destination}",
    ]
    if entry.network:
        lines.append(f"Network: {entry.network}")
    lines.append(f"Submitted: {entry.created_at.isoformat()}")
    lines.append(f"Reference: {entry.id}")
    return subject, "\n".join(lines)


class NotificationGateway(ABC):
    """Outbound channel for administrator notifications"""

    @abstractmethod
    async def notify_withdrawal_submitted(
        self, admin_address: str, entry: LedgerEntry, account_email: str
    ) -> bool:
        """Send the notification; returns True if it was accepted"""
        pass

    async def close(self) -> None:
        pass


class LogNotificationGateway(NotificationGateway):
    """Writes notifications to the log (development default)"""

    def __init__(self):
        self.logger = get_logger("garden.notifications")

    async def notify_withdrawal_submitted(
        self, admin_address: str, entry: LedgerEntry, account_email: str
    ) -> bool:
        subject, _ = build_withdrawal_message(entry, account_email)
        log_action(
            self.logger, "info", f"Notification to {admin_address}: {subject}",
            account_id=entry.account_id, entry_id=entry.id, action="notify_withdrawal"
        )
        return True


class WebhookNotificationGateway(NotificationGateway):
    """POSTs notifications as JSON to an HTTP endpoint (mail relay, chat hook...)"""

    def __init__(self, url: str, timeout: float = 5.0, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self.logger = get_logger("garden.notifications")

    async def notify_withdrawal_submitted(
        self, admin_address: str, entry: LedgerEntry, account_email: str
    ) -> bool:
        subject, body = build_withdrawal_message(entry, account_email)
        payload = {
            "type": "withdrawal_submitted",
            "to": admin_address,
            "subject": subject,
            "body": body,
            "entry_id": entry.id,
            "account_id": entry.account_id,
            "amount": str(entry.amount),
            "currency": entry.currency,
        }
        response = await self._client.post(self.url, json=payload)
        if response.status_code >= 300:
            log_action(
                self.logger, "warning",
                f"Notification webhook returned {response.status_code}",
                entry_id=entry.id, action="notify_withdrawal"
            )
            return False
        return True

    async def close(self) -> None:
        await self._client.aclose()


class NotificationDispatcher:
    """Fires gateway calls as background tasks and keeps them alive until done"""

    def __init__(self, gateway: NotificationGateway, admin_address: str):
        self.gateway = gateway
        self.admin_address = admin_address
        self.logger = get_logger("garden.notifications")
        self._tasks: Set[asyncio.Task] = set()

    def withdrawal_submitted(self, entry: LedgerEntry, account_email: Optional[str]) -> Optional[asyncio.Task]:
        """Schedule the notification; nothing is sent without an account email"""
        if not account_email:
            return None
        task = asyncio.get_running_loop().create_task(self._send(entry, account_email))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _send(self, entry: LedgerEntry, account_email: str) -> bool:
        try:
            return await self.gateway.notify_withdrawal_submitted(
                self.admin_address, entry, account_email
            )
        except Exception as e:
            log_action(
                self.logger, "error", f"Failed to send withdrawal notification: {e}",
                account_id=entry.account_id, entry_id=entry.id, action="notify_withdrawal"
            )
            return False

    async def drain(self) -> None:
        """Wait for notifications still in flight (shutdown and tests)"""
        if self._tasks:
            await asyncio.gather(*list(self._tasks))

    def stats(self) -> Dict[str, Any]:
        return {"in_flight": len(self._tasks)}
