from __future__ import annotations

import re
from typing import Optional, Protocol

from happyjourney.logging import get_logger
from happyjourney.service.errors import NotFoundError, ValidationError
from happyjourney.storage.errors import ConstraintViolation
from happyjourney.storage.models import Vote

logger = get_logger(__name__)

RESOURCE_TYPES = ("contestant", "entry")
RESOURCE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,100}$")


class VoteStore(Protocol):
    def get_vote(self, user_id: str, resource_type: str, resource_id: str) -> Optional[Vote]: ...

    def create_vote(self, user_id: str, resource_type: str, resource_id: str) -> Vote: ...

    def delete_vote(self, user_id: str, resource_type: str, resource_id: str) -> Optional[Vote]: ...

    def count_votes(self, resource_type: str, resource_id: str) -> int: ...


def validate_resource(resource_type: Optional[str], resource_id: Optional[str]) -> None:
    if not resource_type or not resource_id:
        raise ValidationError("resourceType and resourceId are required")
    if resource_type not in RESOURCE_TYPES:
        raise ValidationError("Invalid resourceType")
    if not RESOURCE_ID_RE.match(resource_id):
        raise ValidationError("Invalid resourceId format")


class VoteService:
    def __init__(self, store: VoteStore) -> None:
        self.store = store

    def summary(
        self, resource_type: str, resource_id: str, user_id: Optional[str] = None
    ) -> dict:
        validate_resource(resource_type, resource_id)
        voted = bool(user_id and self.store.get_vote(user_id, resource_type, resource_id))
        return {
            "resourceType": resource_type,
            "resourceId": resource_id,
            "count": self.store.count_votes(resource_type, resource_id),
            "userHasVoted": voted,
        }

    def toggle(self, user_id: str, resource_type: str, resource_id: str) -> dict:
        """Add the caller's vote, or remove it when one already exists."""
        validate_resource(resource_type, resource_id)
        if self.store.delete_vote(user_id, resource_type, resource_id):
            action, voted = "removed", False
        else:
            try:
                self.store.create_vote(user_id, resource_type, resource_id)
            except ConstraintViolation:
                # lost a race with a concurrent add; the vote exists either way
                pass
            action, voted = "added", True
        logger.info(
            "vote_toggled",
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
            action=action,
        )
        return {
            "success": True,
            "action": action,
            "count": self.store.count_votes(resource_type, resource_id),
            "userHasVoted": voted,
        }

    def remove(self, user_id: str, resource_type: str, resource_id: str) -> None:
        validate_resource(resource_type, resource_id)
        if not self.store.delete_vote(user_id, resource_type, resource_id):
            raise NotFoundError("Vote not found")
        logger.info(
            "vote_removed",
            user_id=user_id,
            resource_type=resource_type,
            resource_id=resource_id,
        )
