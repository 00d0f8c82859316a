"""
live_client.schemas
~~~~~~~~~~~~~~~~~~~
Pydantic schemas and models for messages and relay responses.
"""
from live_client.schemas.api_response import ApiResponse
from live_client.schemas.messages import (
    AnchorInfo,
    DanmakuMessage,
    FansPage,
    FansUpdate,
    GiftInfo,
    GiftMessage,
    LiveMessage,
    MessageKind,
    RoomInfo,
    UserInfo,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
