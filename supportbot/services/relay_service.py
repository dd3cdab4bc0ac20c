"""One-shot staff-to-user reply relay.

A staff member presses "reply" on a notification, which binds that staff
member to the user for a short window. Their next message is pushed to the
user verbatim and the binding is gone, whether or not the push worked.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from supportbot.logging_config import get_logger
from supportbot.services.delivery import PUSH_INTERVAL_SECONDS, OutboundChannel, push_text
from supportbot.services.result import ErrorCode, Result
from supportbot.services.ttl_store import ExpiringStore

logger = get_logger("relay_service")


@dataclass
class RelayBinding:
    target_user_id: str
    target_display_name: str
    created_at: float = field(default_factory=time.time)


class ReplyRelay:
    def __init__(
        self,
        channel: OutboundChannel,
        timeout_seconds: float = 180,
        *,
        clock: Callable[[], float] = time.monotonic,
        push_interval_seconds: float = PUSH_INTERVAL_SECONDS,
    ):
        self.channel = channel
        self.bindings: ExpiringStore[str, RelayBinding] = ExpiringStore(timeout_seconds, clock=clock)
        self.push_interval_seconds = push_interval_seconds

    def begin(self, staff_actor_id: str, target_user_id: str, target_display_name: Optional[str] = None) -> RelayBinding:
        """Bind the staff actor to a user, replacing any earlier binding."""
        binding = RelayBinding(target_user_id=target_user_id, target_display_name=target_display_name or target_user_id)
        self.bindings.set(staff_actor_id, binding)
        logger.info(
            "Reply mode started",
            extra={"context": {"staff_actor_id": staff_actor_id, "target_user_id": target_user_id}},
        )
        return binding

    def active_binding(self, staff_actor_id: str) -> Optional[RelayBinding]:
        return self.bindings.get(staff_actor_id)

    def cancel(self, staff_actor_id: str) -> bool:
        return self.bindings.delete(staff_actor_id)

    async def consume(self, staff_actor_id: str, text: str) -> Result[RelayBinding]:
        """Relay text to the bound user. The binding is removed before sending."""
        binding = self.bindings.pop(staff_actor_id)
        if binding is None:
            return Result.failure("no active reply binding", ErrorCode.NO_BINDING)

        delivered = await push_text(self.channel, binding.target_user_id, text, self.push_interval_seconds)
        if not delivered:
            logger.warning(
                "Relay delivery failed",
                extra={"context": {"staff_actor_id": staff_actor_id, "target_user_id": binding.target_user_id}},
            )
            return Result(
                ok=False,
                value=binding,
                error=f"could not deliver to {binding.target_display_name}",
                error_code=ErrorCode.DELIVERY_FAILED,
            )

        logger.info(
            "Relayed staff reply",
            extra={"context": {"staff_actor_id": staff_actor_id, "target_user_id": binding.target_user_id}},
        )
        return Result.success(binding)
