"""Chat authorization - who may view, post to, close or open a thread"""

from typing import Optional

from ...models import ServiceRequest, User
from ...models_chat import ChatThread


class AuthorizationPolicy:
    """Capability checks shared by the REST endpoints and the real-time subscribe path"""

    @staticmethod
    def is_admin(actor: Optional[User]) -> bool:
        return bool(actor is not None and actor.is_admin)

    @staticmethod
    def is_participant(actor: Optional[User], thread: ChatThread) -> bool:
        if actor is None:
            return False
        participants = {pid for pid in (thread.client_id, thread.admin_id) if pid is not None}
        return actor.id in participants

    def can_view(self, actor: Optional[User], thread: ChatThread) -> bool:
        return self.is_admin(actor) or self.is_participant(actor, thread)

    def can_post(self, actor: Optional[User], thread: ChatThread) -> bool:
        # Closed threads refuse everyone, admins included
        return thread.is_open and self.can_view(actor, thread)

    def can_close(self, actor: Optional[User], thread: ChatThread) -> bool:
        return self.can_view(actor, thread)

    def can_open(self, actor: Optional[User], request: ServiceRequest) -> bool:
        if actor is None:
            return False
        return self.is_admin(actor) or request.user_id == actor.id


policy = AuthorizationPolicy()
