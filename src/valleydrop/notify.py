"""
valleydrop/notify.py

Owner and public notifications.

Notifications are fire-and-forget: a failing sink is logged and never
changes workflow state. Partial distributions never produce a completion
message.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from .config import LOVELACE_PER_ADA, lovelace_to_ada
from .session import AirdropSession, Stage

logger = logging.getLogger("valleydrop.notify")


class NotificationSink(ABC):
    """Where owner DMs and public announcements go."""

    @abstractmethod
    async def notify_owner(self, owner_id: str, message: str) -> None:
        pass

    @abstractmethod
    async def notify_public(self, channel: str, summary: Dict[str, Any]) -> Optional[str]:
        """Post a public summary. Returns a link to the post, if any."""
        pass


class LoggingNotificationSink(NotificationSink):
    """Writes notifications to the log. Default sink for the CLI."""

    async def notify_owner(self, owner_id: str, message: str) -> None:
        logger.info(f"[owner {owner_id}] {message}")

    async def notify_public(self, channel: str, summary: Dict[str, Any]) -> Optional[str]:
        logger.info(f"[channel {channel}] {summary.get('title', '')}: {summary.get('description', '')}")
        return None


class MemoryNotificationSink(NotificationSink):
    """Collects notifications in lists."""

    def __init__(self):
        self.owner_messages: List[tuple] = []
        self.public_posts: List[tuple] = []

    async def notify_owner(self, owner_id: str, message: str) -> None:
        self.owner_messages.append((owner_id, message))

    async def notify_public(self, channel: str, summary: Dict[str, Any]) -> Optional[str]:
        self.public_posts.append((channel, summary))
        return None


async def send_owner(sink: Optional[NotificationSink], owner_id: str, message: str) -> None:
    if sink is None:
        return
    try:
        await sink.notify_owner(owner_id, message)
    except Exception as e:
        logger.warning(f"Owner notification to {owner_id} failed: {e}")


async def send_public(
    sink: Optional[NotificationSink],
    channel: str,
    summary: Dict[str, Any],
) -> Optional[str]:
    if sink is None or not channel:
        return None
    try:
        return await sink.notify_public(channel, summary)
    except Exception as e:
        logger.warning(f"Public announcement to {channel} failed: {e}")
        return None


# ============================================================================
# MESSAGES
# ============================================================================

def rate_in_ada(session: AirdropSession) -> float:
    return float(session.rate) / LOVELACE_PER_ADA


def deposit_instructions(
    session: AirdropSession,
    invalid_dropped: int = 0,
    dust_dropped: int = 0,
) -> str:
    lines = [
        "**Airdrop Setup**",
        "Please deposit the funds to the address below. "
        "We'll automatically start once funds arrive (no timeout).",
        "",
        f"- Policy ID: {session.policy_id or '-'}",
        f"- Recipients: {len(session.recipients)}",
        f"- Total weight: {session.total_weight}",
        f"- ADA per unit: {rate_in_ada(session):.6f}",
        f"- Required ADA (incl. fee buffer and service fee): {lovelace_to_ada(session.required_amount):.6f}",
        f"- Service fee: {lovelace_to_ada(session.service_fee):.6f} ADA",
        f"- Deposit address: `{session.funding_address}`",
        f"- Skipped holders: {invalid_dropped} invalid, {dust_dropped} below minimum payout",
    ]
    return "\n".join(lines)


def completion_receipt(session: AirdropSession) -> str:
    lines = [
        "**Airdrop Complete!**",
        "",
        f"- Recipients: {len(session.recipients)}",
        f"- Total weight: {session.total_weight}",
        f"- ADA per unit: {rate_in_ada(session):.6f}",
        "- Distribution TXs:",
    ]
    lines += [f"  - {tx_id}" for tx_id in session.distribution_tx_ids]
    if session.service_fee_tx_id:
        lines.append(f"- Service Fee TX: {session.service_fee_tx_id}")
    return "\n".join(lines)


def public_summary(session: AirdropSession) -> Dict[str, Any]:
    return {
        "title": "Airdrop Complete",
        "description": (
            f"Distributed to {len(session.recipients)} wallets "
            f"across {session.total_weight} units."
        ),
        "fields": {
            "ADA per unit": f"{rate_in_ada(session):.6f}",
            "TX Count": str(len(session.distribution_tx_ids)),
        },
    }


def failure_message(session: AirdropSession, error: Exception) -> str:
    if session.stage == Stage.PAYING_FEE:
        return (
            f"Airdrop {session.session_id}: all {len(session.distribution_tx_ids)} distribution "
            f"transaction(s) were submitted and recipients are paid. Only the service fee "
            f"and drain step stopped: {error}. An operator will finish it."
        )
    if session.has_distribution_ids:
        return (
            f"Airdrop {session.session_id} stopped after "
            f"{len(session.distribution_tx_ids)} submitted transaction(s): {error}. "
            f"Some recipients may already be paid; an operator will verify on-chain state."
        )
    return f"Airdrop {session.session_id} failed at stage {session.stage}: {error}"
