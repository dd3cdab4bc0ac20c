from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class LineSource(BaseModel):
    type: str  # user, group, room
    user_id: Optional[str] = Field(default=None, alias="userId")
    group_id: Optional[str] = Field(default=None, alias="groupId")
    room_id: Optional[str] = Field(default=None, alias="roomId")

    model_config = ConfigDict(populate_by_name=True)

    @property
    def chat_id(self) -> Optional[str]:
        """Where a push should go for this source: group, room, or the user."""
        return self.group_id or self.room_id or self.user_id


class LineMessage(BaseModel):
    id: Optional[str] = None
    type: str  # text, image, sticker, ...
    text: Optional[str] = None


class LinePostback(BaseModel):
    data: str


class LineEvent(BaseModel):
    type: str  # message, postback, follow, ...
    timestamp: Optional[int] = None
    reply_token: Optional[str] = Field(default=None, alias="replyToken")
    source: Optional[LineSource] = None
    message: Optional[LineMessage] = None
    postback: Optional[LinePostback] = None

    model_config = ConfigDict(populate_by_name=True)

    @property
    def user_id(self) -> Optional[str]:
        return self.source.user_id if self.source else None

    @property
    def text(self) -> Optional[str]:
        if self.type == "message" and self.message and self.message.type == "text":
            return self.message.text
        return None


class LineWebhookBody(BaseModel):
    destination: Optional[str] = None
    events: List[LineEvent] = []
