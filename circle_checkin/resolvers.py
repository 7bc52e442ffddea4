"""Fan-out lookups: who belongs to a circle, and which devices reach a person."""
import logging
from typing import Iterable, List, Set

from .errors import NotFoundError
from .models import Channel, DeviceEndpoint
from .store import CheckinStore

logger = logging.getLogger(__name__)


class EndpointRegistry:
    """Registered push endpoints per user. Reads need no transaction."""

    def __init__(self, store: CheckinStore):
        self.store = store

    def resolve_endpoints(self, user_id: str) -> Set[DeviceEndpoint]:
        return set(self.store.endpoints_for_user(user_id))

    def resolve_many(self, user_ids: Iterable[str]) -> List[DeviceEndpoint]:
        endpoints = []
        for user_id in sorted(set(user_ids)):
            endpoints.extend(self.store.endpoints_for_user(user_id))
        return endpoints

    def register(self, user_id: str, token: str, channel: Channel = Channel.WEB_PUSH) -> DeviceEndpoint:
        endpoint = self.store.register_endpoint(DeviceEndpoint(token=token, user_id=user_id, channel=channel))
        logger.info(f"Registered {endpoint.channel.value} endpoint ...{token[-20:]} for {user_id}")
        return endpoint

    def remove(self, token: str) -> bool:
        removed = self.store.remove_endpoint(token)
        if removed:
            logger.info(f"Removed endpoint ...{token[-20:]}")
        return removed


class MembershipResolver:
    def __init__(self, store: CheckinStore):
        self.store = store

    def resolve_circle_members(self, circle_id: str, exclude_user_id: str = None) -> Set[str]:
        circle = self.store.get_circle(circle_id)
        if circle is None:
            raise NotFoundError("Circle not found.")
        return {m for m in circle.member_ids if m != exclude_user_id}

    def resolve_all_circles_members(self, user_id: str) -> Set[str]:
        """Everyone who shares at least one circle with `user_id`, once each, never the user themself."""
        members: Set[str] = set()
        for circle in self.store.circles_for_user(user_id):
            members.update(circle.member_ids)
        members.discard(user_id)
        return members
