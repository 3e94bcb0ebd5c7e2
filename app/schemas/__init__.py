"""
app.schemas
~~~~~~~~~~~
Pydantic schemas: REST envelope, stream records and socket payloads.
"""
from app.schemas.api_response import ApiResponse
from app.schemas.presence import (
    ChatMessage,
    ErrorReply,
    PublicUser,
    StreamEnded,
    StreamsListData,
    StreamStarted,
    StreamSummary,
    TypingNotice,
    UserInfo,
    ViewerInfo,
    ViewersCount,
    ViewerUpdate,
)
from app.schemas.stream import Identity, StreamCreateRequest, StreamRecord

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
