"""Chat domain errors - mapped to HTTP responses by the app's exception handler"""

from typing import Optional


class ChatError(Exception):
    """Base class for every chat failure surfaced to a caller"""

    status_code = 500
    code = "chat_error"

    def __init__(self, detail: str, field: Optional[str] = None):
        super().__init__(detail)
        self.detail = detail
        self.field = field

    def to_dict(self) -> dict:
        body = {"detail": self.detail, "code": self.code}
        if self.field:
            body["field"] = self.field
        return body


class ChatNotFound(ChatError):
    status_code = 404
    code = "not_found"


class ChatForbidden(ChatError):
    status_code = 403
    code = "forbidden"


class ChatFeatureDisabled(ChatError):
    status_code = 501
    code = "feature_disabled"

    def __init__(self, detail: str = "Chat feature is disabled"):
        super().__init__(detail)


class ChatValidationError(ChatError):
    status_code = 422
    code = "validation_error"


class ChatStorageFailure(ChatError):
    """Object storage refused or failed a signing/deletion call"""

    status_code = 502
    code = "storage_failure"
