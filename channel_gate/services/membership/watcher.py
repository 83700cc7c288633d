"""
MembershipWatcher: события chat_member закрытого канала.

Вступление по выданной ссылке помечает её использованной (ровно один раз) и отзывает.
Выход снимает membership_confirmed; повторно выдачу это не открывает.
"""
import logging
from enum import Enum

from channel_gate.core.config import settings
from channel_gate.services.credentials.issuer import CredentialIssuer
from channel_gate.services.subscribers.store import SubscriberStore
from channel_gate.utils.metrics import memberships_total

logger = logging.getLogger(__name__)

MEMBER_STATUSES = frozenset({"member", "administrator", "creator", "restricted"})
GONE_STATUSES = frozenset({"left", "kicked"})


class MembershipChange(str, Enum):
    CONSUMED = "consumed"
    REJOINED = "rejoined"
    LEFT = "left"
    IGNORED = "ignored"


class MembershipWatcher:
    def __init__(
        self,
        store: SubscriberStore,
        issuer: CredentialIssuer,
        channel_id: str | None = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.channel_id = str(channel_id or settings.channel_id)

    async def handle_update(
        self,
        chat_id: str | int,
        user_id: str | int,
        old_status: str | None,
        new_status: str | None,
        invite_link: str | None = None,
    ) -> MembershipChange:
        """
        old_status / new_status — статусы ChatMember ("member", "left", ...).
        "restricted" передаётся адаптером только для is_member=True.
        """
        change = await self._handle(str(chat_id), str(user_id), old_status, new_status, invite_link)
        if change is not MembershipChange.IGNORED:
            memberships_total.labels(change=change.value).inc()
            logger.info(
                "membership_change",
                extra={
                    "user_id": str(user_id),
                    "change": change.value,
                    "old_status": old_status,
                    "new_status": new_status,
                },
            )
        return change

    async def _handle(
        self,
        chat_id: str,
        user_id: str,
        old_status: str | None,
        new_status: str | None,
        invite_link: str | None,
    ) -> MembershipChange:
        if chat_id != self.channel_id:
            return MembershipChange.IGNORED

        joined = new_status in MEMBER_STATUSES and old_status not in MEMBER_STATUSES
        left = new_status in GONE_STATUSES and old_status in MEMBER_STATUSES

        if joined:
            sub = self.store.get_by_user_id(user_id)
            if sub is None:
                return MembershipChange.IGNORED
            link = sub.credential_link
            if link and self.store.mark_consumed(user_id, invite_link):
                await self.issuer.revoke(link)
                return MembershipChange.CONSUMED
            if self.store.confirm_membership(user_id):
                return MembershipChange.REJOINED
            return MembershipChange.IGNORED

        if left and self.store.clear_membership(user_id):
            return MembershipChange.LEFT
        return MembershipChange.IGNORED
